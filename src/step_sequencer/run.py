# run.py
# Entry point. Config and wiring only; no logic lives here.
#
# Runs the leak testing template against the simulated world, with a
# scripted user performing each action between ticks. Point
# SEQUENCER_PROGRAM_PATH at a saved program JSON to validate and preview it
# instead.

from collections.abc import Callable

from step_sequencer import display
from step_sequencer.config import load_config
from step_sequencer.controller import (
    ControllerState,
    DispatchError,
    ProgramValidationError,
    SequenceController,
)
from step_sequencer.hierarchy import Hierarchy
from step_sequencer.loader import ProgramLoadError, load_program
from step_sequencer.models import Framework
from step_sequencer.references import ReferenceResolver
from step_sequencer.templates import create_leak_testing_program, create_leak_testing_scene
from step_sequencer.world import SimulatedWorld

TICK_S = 0.5


def scripted_user(world: SimulatedWorld) -> list[tuple[str, Callable[[], object]]]:
    """The actions a trainee performs, in order."""
    obj = world.find
    return [
        ("Remove liquid valve cap", lambda: world.snap(obj("HVAC/LiquidValve/Cap"), obj("Table/LiquidCapTray"))),
        ("Remove gas valve cap", lambda: world.snap(obj("HVAC/GasValve/Cap"), obj("Table/GasCapTray"))),
        ("Place allen key", lambda: world.snap(obj("Tools/AllenKey"), obj("HVAC/LiquidValve/KeySocket"))),
        ("Yellow hose → gauge", lambda: world.snap(obj("Hoses/Yellow/MaleEnd"), obj("Nitrogen/GaugePort"))),
        ("Yellow hose → manifold", lambda: world.snap(obj("Hoses/Yellow/FemaleEnd"), obj("Manifold/CenterPort"))),
        ("Blue hose → suction", lambda: world.snap(obj("Hoses/Blue/MaleEnd"), obj("HVAC/GasValve/ServicePort"))),
        ("Blue hose → manifold", lambda: world.snap(obj("Hoses/Blue/FemaleEnd"), obj("Manifold/LowPort"))),
        ("Seat fitting", lambda: world.snap(obj("HVAC/GasValve/Fitting"), obj("HVAC/GasValve/FittingSocket"))),
        ("Tighten fitting", lambda: world.rotate_fastener(obj("HVAC/GasValve/Fitting"), 60.0)),
        ("Turn nitrogen valve", lambda: world.turn_knob(obj("Nitrogen/Valve"), 44.0)),
        ("Turn manifold valve", lambda: world.turn_knob(obj("Manifold/LowValve"), 91.0)),
    ]


def main() -> None:
    config = load_config()
    display.configure_logging(config.log_level)

    world = create_leak_testing_scene(SimulatedWorld(config.framework or Framework.XRI))

    if config.program_path:
        try:
            program = load_program(config.program_path)
        except ProgramLoadError as exc:
            display.halt(str(exc))
            return
        hierarchy = Hierarchy(program)
        display.banner(program, world.current_framework())
        display.program_tree(program)
        display.validation_report(hierarchy.validate() + hierarchy.reference_warnings(ReferenceResolver(world)))
        return

    program = create_leak_testing_program()
    now = 0.0
    controller = SequenceController(
        world, config=config, listeners=[display.ConsoleGuidance()], clock=lambda: now
    )
    display.banner(program, controller.detector.current_framework())
    display.program_tree(program)

    try:
        controller.start(program)
        for _description, action in scripted_user(world):
            action()
            now += TICK_S
            controller.tick()
        while controller.state is ControllerState.RUNNING and now < 10.0:
            now += TICK_S
            controller.tick()
    except ProgramValidationError as exc:
        display.validation_report(exc.issues)
        display.halt(str(exc))
        return
    except DispatchError as exc:
        display.halt(str(exc))
        return
    finally:
        display.progress_summary(controller.progress())
        controller.shutdown()


if __name__ == "__main__":
    main()
