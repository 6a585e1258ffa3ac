import logging
from unittest.mock import MagicMock

import pytest

from step_sequencer.config import EngineConfig
from step_sequencer.controller import (
    ControllerState,
    DispatchError,
    GuidanceListener,
    ProgramValidationError,
    SequenceController,
)
from step_sequencer.enablement import EnablementState
from step_sequencer.hierarchy import InvalidTransition
from step_sequencer.models import FastenerConfig, Framework, Module, Program, StepStatus, TaskGroup
from step_sequencer.world import StaticFrameworkDetector


@pytest.fixture
def listener():
    return MagicMock(spec=GuidanceListener)


@pytest.fixture
def controller(world, config, listener):
    return SequenceController(world, config=config, listeners=[listener], clock=lambda: 0.0)


def _states_for(listener, step):
    return [c.args[1] for c in listener.step_state_changed.call_args_list if c.args[0] is step]


# ---------------------------------------------------------------------------
# Scenario Tests
# ---------------------------------------------------------------------------

def test_linear_sequence(world, controller, listener, make_step, make_program):
    a, socket = world.add("A"), world.add("Socket1")
    steps = [
        make_step("grab", "grab", target="A"),
        make_step("place", "grab_and_snap", target="A", destination="Socket1"),
        make_step("read", "show_instruction", hint="Well done"),
    ]
    program = make_program(steps)

    controller.start(program)
    assert controller.active == [steps[0]]

    world.grab(a)
    assert steps[0].status is StepStatus.COMPLETED
    assert controller.active == [steps[1]]

    world.snap(a, socket)
    assert all(s.status is StepStatus.COMPLETED for s in steps)
    assert controller.state is ControllerState.COMPLETED

    completed = [c.args[0] for c in listener.step_completed.call_args_list]
    assert completed == steps
    listener.module_completed.assert_called_once_with(program.modules[0])
    listener.sequence_completed.assert_called_once_with(program)

    assert _states_for(listener, steps[0]) == [
        EnablementState.ACTIVE,
        EnablementState.RETAINED,
        EnablementState.COMPLETED,
    ]
    assert _states_for(listener, steps[2])[-1] is EnablementState.COMPLETED

def test_parallel_lookahead_prepares_socket(world, controller, make_step, make_program):
    a, socket, b = world.add("A"), world.add("Socket1"), world.add("B")
    steps = [
        make_step("grab", "grab", target="A", allow_parallel=True),
        make_step("place", "grab_and_snap", target="A", destination="Socket1"),
        make_step("knob", "turn_knob", target="B"),
    ]
    controller.start(make_program(steps))

    assert controller.active == [steps[0]]
    assert controller.enablement.state_of(steps[1]) is EnablementState.PREPARED
    assert socket.interaction_enabled is True
    assert a.interaction_enabled is True
    assert b.interaction_enabled is False

def test_active_set_size_after_start(world, controller, make_step, make_program):
    for name in "ABCDE":
        world.add(name)
    steps = [
        make_step("s0", "grab", target="A"),
        make_step("s1", "grab", target="B", allow_parallel=True),
        make_step("s2", "grab", target="C", allow_parallel=True),
        make_step("s3", "grab", target="D"),
        make_step("s4", "grab", target="E", allow_parallel=True),
    ]
    controller.start(make_program(steps))
    assert controller.active == steps[:3]

def test_dispatch_failure_halts_before_activation(world, controller, listener, make_step, make_program):
    world.add("Button")
    world.add("Anchor")
    step = make_step("go", "teleport", target="Button", destination="Anchor")

    with pytest.raises(DispatchError, match="XR Interaction Toolkit"):
        controller.start(make_program([step]))

    assert step.status is StepStatus.NOT_STARTED
    assert controller.active == []
    listener.error_reported.assert_called_once()
    listener.step_started.assert_not_called()

def test_dispatch_failure_at_start_keeps_earlier_steps_enabled(world, controller, make_step, make_program):
    a = world.add("A")
    world.add("Button")
    world.add("Anchor")
    steps = [
        make_step("grab", "grab", target="A"),
        make_step("go", "teleport", target="Button", destination="Anchor", allow_parallel=True),
    ]

    with pytest.raises(DispatchError):
        controller.start(make_program(steps))

    assert controller.active == [steps[0]]
    assert controller.enablement.state_of(steps[0]) is EnablementState.ACTIVE
    assert a.interaction_enabled is True

def test_dispatch_failure_after_completion_keeps_started_steps_enabled(world, controller, make_step, make_program):
    a, b = world.add("A"), world.add("B")
    world.add("Button")
    world.add("Anchor")
    steps = [
        make_step("grab a", "grab", target="A"),
        make_step("grab b", "grab", target="B"),
        make_step("go", "teleport", target="Button", destination="Anchor", allow_parallel=True),
    ]
    controller.start(make_program(steps))
    assert b.interaction_enabled is False

    with pytest.raises(DispatchError):
        world.grab(a)

    assert steps[1].status is StepStatus.ACTIVE
    assert controller.enablement.state_of(steps[1]) is EnablementState.ACTIVE
    assert b.interaction_enabled is True
    assert a.interaction_enabled is False
    assert controller.state is ControllerState.RUNNING

def test_teleport_runs_under_auto_hands(auto_hands_world, config, make_step, make_program):
    world = auto_hands_world
    button, anchor = world.add("Button"), world.add("Anchor")
    controller = SequenceController(world, config=config)
    controller.start(make_program([make_step("go", "teleport", target="Button", destination="Anchor")]))

    world.press(button)
    assert world.player_location is anchor
    assert controller.state is ControllerState.COMPLETED

def test_framework_queried_at_each_dispatch(world, config, make_step, make_program):
    world.add("A")
    world.add("Button")
    world.add("Anchor")
    detector = StaticFrameworkDetector(Framework.XRI)
    controller = SequenceController(world, detector=detector, config=config)
    steps = [
        make_step("grab", "grab", target="A"),
        make_step("go", "teleport", target="Button", destination="Anchor"),
    ]
    controller.start(make_program(steps))

    detector.framework = Framework.AUTO_HANDS
    world.grab(world.find("A"))
    assert steps[1].status is StepStatus.ACTIVE

def test_timeout_recovery(world, controller, make_step, make_program, caplog):
    bolt = world.add("Bolt", fastener=FastenerConfig())
    hole = world.add("Hole")
    step = make_step("tighten", "tighten_fastener", target="Bolt", socket="Hole")
    controller.start(make_program([step]))

    with caplog.at_level(logging.WARNING, logger="step_sequencer"):
        for i in range(13):
            controller.tick(i * 0.5)
    assert sum("still waiting" in r.getMessage() for r in caplog.records) == 3
    assert step.status is StepStatus.ACTIVE

    world.snap(bolt, hole)
    controller.tick(6.5)
    world.rotate_fastener(bolt, 50)
    assert step.status is StepStatus.COMPLETED
    assert controller.state is ControllerState.COMPLETED

# ---------------------------------------------------------------------------
# Validation and Lifecycle Tests
# ---------------------------------------------------------------------------

def test_invalid_program_does_not_start(controller, make_step, make_program):
    program = make_program([make_step("grab", "grab")])
    with pytest.raises(ProgramValidationError) as exc_info:
        controller.start(program)
    assert len(exc_info.value.issues) == 1
    assert controller.state is ControllerState.IDLE
    assert controller.program is None

def test_start_while_running_is_rejected(world, controller, make_step, make_program):
    world.add("A")
    program = make_program([make_step("grab", "grab", target="A")])
    controller.start(program)
    with pytest.raises(InvalidTransition):
        controller.start(program)

def test_abort_is_idempotent_and_restartable(world, controller, listener, make_step, make_program):
    a, b = world.add("A"), world.add("B")
    steps = [make_step("grab", "grab", target="A"), make_step("grab b", "grab", target="B")]
    program = make_program(steps)
    controller.start(program)
    world.grab(a)
    assert b.interaction_enabled is True
    assert a.interaction_enabled is False

    controller.abort()
    controller.abort()
    assert controller.state is ControllerState.ABORTED
    listener.sequence_aborted.assert_called_once_with(program)
    assert a.interaction_enabled is True
    assert world.subscriber_count(b) == 0

    controller.start(program)
    assert controller.state is ControllerState.RUNNING
    assert steps[0].status is StepStatus.ACTIVE
    assert steps[1].status is StepStatus.NOT_STARTED
    assert world.subscriber_count(a) == 1

def test_missing_reference_stalls_until_resume(world, controller, listener, make_step, make_program, caplog):
    a = world.add("A")
    steps = [make_step("grab", "grab", target="A"), make_step("grab b", "grab", target="Rig/B")]
    with caplog.at_level(logging.WARNING, logger="step_sequencer"):
        controller.start(make_program(steps))
    assert "does not resolve" in caplog.text

    world.grab(a)
    assert steps[1].status is StepStatus.NOT_STARTED
    assert controller.stalled == [steps[1]]
    listener.error_reported.assert_called_once()
    assert controller.state is ControllerState.RUNNING

    assert controller.resume() == []
    assert steps[1].status is StepStatus.NOT_STARTED

    b = world.add("Rig/B")
    assert controller.resume() == [steps[1]]
    world.grab(b)
    assert controller.state is ControllerState.COMPLETED

def test_completions_processed_in_arrival_order(world, config, make_step, make_program):
    a, b, _ = world.add("A"), world.add("B"), world.add("C")
    steps = [
        make_step("grab a", "grab", target="A"),
        make_step("grab b", "grab", target="B", allow_parallel=True),
        make_step("grab c", "grab", target="C"),
    ]
    events = []

    class Recorder(GuidanceListener):
        def step_started(self, step):
            events.append(("started", step.name))

        def step_completed(self, step, reason):
            events.append(("completed", step.name))
            if step is steps[0]:
                world.grab(b)

    controller = SequenceController(world, config=config, listeners=[Recorder()])
    controller.start(make_program(steps))
    events.clear()

    world.grab(a)
    assert events == [("completed", "grab a"), ("completed", "grab b"), ("started", "grab c")]

def test_optional_steps_do_not_block_the_group(world, controller, listener, make_step, make_program):
    a, _ = world.add("A"), world.add("B")
    steps = [
        make_step("grab", "grab", target="A"),
        make_step("bonus", "grab", target="B", is_optional=True, allow_parallel=True),
    ]
    controller.start(make_program(steps))
    assert len(controller.active) == 2

    world.grab(a)
    assert controller.state is ControllerState.COMPLETED
    assert steps[1].status is StepStatus.ACTIVE
    assert world.subscriber_count(world.find("B")) == 0

def test_skip_optional_task_group(world, controller, listener, make_step, make_program):
    world.add("A")
    world.add("B")
    optional = TaskGroup(name="Extra", is_optional=True, steps=[make_step("grab", "grab", target="A")])
    required = TaskGroup(name="Main", steps=[make_step("grab", "grab", target="B")])
    controller.start(make_program(optional, required))

    controller.skip_task_group()
    assert controller.current_task_group is required
    assert controller.active == required.steps

    with pytest.raises(InvalidTransition):
        controller.skip_task_group()

def test_trailing_optional_group_does_not_block_module(world, controller, listener, make_step, make_program):
    a = world.add("A")
    world.add("B")
    required = TaskGroup(name="Main", steps=[make_step("grab", "grab", target="A")])
    optional = TaskGroup(name="Extra", is_optional=True, steps=[make_step("grab", "grab", target="B")])
    program = make_program(required, optional)
    controller.start(program)

    world.grab(a)
    assert controller.state is ControllerState.COMPLETED
    listener.task_group_completed.assert_called_once_with(required)
    listener.module_completed.assert_called_once_with(program.modules[0])
    assert optional.steps[0].status is StepStatus.NOT_STARTED
    assert world.subscriber_count(world.find("B")) == 0

def test_all_optional_module_is_passed_over(world, controller, listener, make_step):
    world.add("A")
    intro = Module(
        name="Intro",
        task_groups=[TaskGroup(name="Tour", is_optional=True, steps=[make_step("read", "show_instruction", hint="x")])],
    )
    work = Module(name="Work", task_groups=[TaskGroup(name="Main", steps=[make_step("grab", "grab", target="A")])])
    controller.start(Program(name="Two Modules", modules=[intro, work]))

    listener.module_completed.assert_called_once_with(intro)
    listener.task_group_completed.assert_not_called()
    assert controller.current_module is work
    assert controller.active == work.task_groups[0].steps

def test_progress_snapshot(world, controller, make_step, make_program):
    a = world.add("A")
    world.add("B")
    first = [make_step("grab", "grab", target="A")]
    second = [make_step("grab", "grab", target="B"), make_step("read", "show_instruction", hint="x")]
    controller.start(make_program(first, second))

    world.grab(a)
    progress = controller.progress()
    assert progress.task_group_index == 1
    assert progress.task_group_name == "Group 1"
    assert progress.total_steps == 2
    assert progress.completed_steps == 0
    assert not progress.is_complete

def test_shutdown_cleans_up_handlers(world, controller, make_step, make_program):
    a = world.add("A")
    controller.start(make_program([make_step("grab", "grab", target="A")]))
    controller.shutdown()
    assert controller.state is ControllerState.ABORTED
    assert world.subscriber_count(a) == 0

def test_config_framework_overrides_world(world):
    controller = SequenceController(world, config=EngineConfig(framework=Framework.AUTO_HANDS))
    assert controller.detector.current_framework() is Framework.AUTO_HANDS
