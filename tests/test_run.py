from unittest.mock import MagicMock

from step_sequencer.config import EngineConfig
from step_sequencer.controller import ControllerState, GuidanceListener, SequenceController
from step_sequencer.models import Framework, StepStatus
from step_sequencer.run import scripted_user
from step_sequencer.templates import create_leak_testing_program, create_leak_testing_scene
from step_sequencer.world import SimulatedWorld

# ---------------------------------------------------------------------------
# End-to-end Tests
# ---------------------------------------------------------------------------

def test_scripted_user_completes_leak_test():
    world = create_leak_testing_scene(SimulatedWorld(Framework.XRI))
    listener = MagicMock(spec=GuidanceListener)
    now = 0.0
    controller = SequenceController(world, config=EngineConfig(), listeners=[listener], clock=lambda: now)
    program = create_leak_testing_program()

    controller.start(program)
    assert len(controller.active) == 2

    for _description, action in scripted_user(world):
        assert action() is not False
        now += 0.5
        controller.tick()

    assert controller.state is ControllerState.COMPLETED
    assert listener.task_group_completed.call_count == 3
    listener.module_completed.assert_called_once_with(program.modules[0])
    listener.sequence_completed.assert_called_once_with(program)
    assert controller.progress().overall_progress() == 1.0

    review = program.modules[0].task_groups[-1]
    assert review.is_optional
    assert all(s.status is StepStatus.NOT_STARTED for s in review.steps)

def test_fitting_threshold_override_applied():
    world = create_leak_testing_scene(SimulatedWorld(Framework.XRI))
    controller = SequenceController(world)
    controller.start(create_leak_testing_program())

    clock = 0.0
    for description, action in scripted_user(world):
        if description == "Tighten fitting":
            break
        action()
        clock += 0.5
        controller.tick(clock)

    fitting = world.find("HVAC/GasValve/Fitting")
    assert world.fastener_config(fitting).tighten_threshold == 60.0
