# templates.py
# Ready-made programs, plus the matching scene for the simulated world.

from step_sequencer.models import (
    FastenerConfig,
    Module,
    ObjectReference,
    Program,
    Step,
    StepParameters,
    StepType,
    TaskGroup,
)
from step_sequencer.world import SimulatedWorld


def ref(path: str) -> ObjectReference:
    return ObjectReference(path=path)


def create_leak_testing_program() -> Program:
    """HVAC leak test: uncap the valves, connect the manifold hoses, open the valves."""
    initial_setup = TaskGroup(
        name="Initial Setup",
        description="Remove valve caps and prepare tools",
        steps=[
            Step(
                name="Remove liquid valve cap",
                type=StepType.GRAB_AND_SNAP,
                target=ref("HVAC/LiquidValve/Cap"),
                destination=ref("Table/LiquidCapTray"),
                hint="Remove the cap from the liquid valve and place it on the table",
                allow_parallel=True,
            ),
            Step(
                name="Remove gas valve cap",
                type=StepType.GRAB_AND_SNAP,
                target=ref("HVAC/GasValve/Cap"),
                destination=ref("Table/GasCapTray"),
                hint="Remove the cap from the gas valve and place it on the table",
                allow_parallel=True,
            ),
            Step(
                name="Place allen key on liquid valve",
                type=StepType.GRAB_AND_SNAP,
                target=ref("Tools/AllenKey"),
                destination=ref("HVAC/LiquidValve/KeySocket"),
                hint="Connect the allen key to the liquid valve",
            ),
        ],
    )

    hose_connections = TaskGroup(
        name="Hose Connections",
        description="Connect manifold hoses to the system",
        steps=[
            Step(
                name="Yellow hose to nitrogen gauge",
                type=StepType.GRAB_AND_SNAP,
                target=ref("Hoses/Yellow/MaleEnd"),
                destination=ref("Nitrogen/GaugePort"),
                hint="Connect the male end of the yellow hose to the nitrogen gauge",
            ),
            Step(
                name="Yellow hose to manifold",
                type=StepType.GRAB_AND_SNAP,
                target=ref("Hoses/Yellow/FemaleEnd"),
                destination=ref("Manifold/CenterPort"),
                hint="Connect the female end of the yellow hose to the manifold",
                allow_parallel=True,
            ),
            Step(
                name="Blue hose to suction valve",
                type=StepType.GRAB_AND_SNAP,
                target=ref("Hoses/Blue/MaleEnd"),
                destination=ref("HVAC/GasValve/ServicePort"),
                hint="Connect the male end of the blue hose to the suction valve",
                allow_parallel=True,
            ),
            Step(
                name="Blue hose to manifold",
                type=StepType.GRAB_AND_SNAP,
                target=ref("Hoses/Blue/FemaleEnd"),
                destination=ref("Manifold/LowPort"),
                hint="Connect the female end of the blue hose to the manifold",
                allow_parallel=True,
            ),
            Step(
                name="Wait for connections",
                type=StepType.WAIT_FOR_CONDITION,
                hint="All hose connections must be complete before valve operations",
                params=StepParameters(wait_for_steps=[0, 1, 2, 3]),
            ),
        ],
    )

    valve_operations = TaskGroup(
        name="Valve Operations",
        description="Operate system valves for leak testing",
        steps=[
            Step(
                name="Tighten service port fitting",
                type=StepType.TIGHTEN_FASTENER,
                target=ref("HVAC/GasValve/Fitting"),
                socket=ref("HVAC/GasValve/FittingSocket"),
                hint="Tighten the service port fitting",
                params=StepParameters(tighten_threshold=60.0),
            ),
            Step(
                name="Turn nitrogen valve",
                type=StepType.TURN_KNOB,
                target=ref("Nitrogen/Valve"),
                hint="Turn the nitrogen valve 45 degrees clockwise",
                params=StepParameters(target_angle=45.0, angle_tolerance=5.0),
            ),
            Step(
                name="Turn manifold valve",
                type=StepType.TURN_KNOB,
                target=ref("Manifold/LowValve"),
                hint="Turn the manifold valve 90 degrees clockwise",
                params=StepParameters(target_angle=90.0, angle_tolerance=5.0),
            ),
        ],
    )

    review = TaskGroup(
        name="Review",
        description="Optional recap of the procedure",
        is_optional=True,
        steps=[
            Step(
                name="Read the pressure",
                type=StepType.SHOW_INSTRUCTION,
                hint="Hold pressure for ten minutes and watch the gauge for any drop",
            ),
        ],
    )

    return Program(
        name="HVAC Training",
        description="Comprehensive HVAC system training program",
        modules=[
            Module(
                name="Leak Testing",
                description="Learn to perform AC system leak testing procedures",
                task_groups=[initial_setup, hose_connections, valve_operations, review],
            )
        ],
    )


def create_leak_testing_scene(world: SimulatedWorld) -> SimulatedWorld:
    """Add every object the leak testing program references."""
    for path in (
        "HVAC/LiquidValve/Cap",
        "HVAC/LiquidValve/KeySocket",
        "HVAC/GasValve/Cap",
        "HVAC/GasValve/ServicePort",
        "HVAC/GasValve/FittingSocket",
        "Table/LiquidCapTray",
        "Table/GasCapTray",
        "Tools/AllenKey",
        "Hoses/Yellow/MaleEnd",
        "Hoses/Yellow/FemaleEnd",
        "Hoses/Blue/MaleEnd",
        "Hoses/Blue/FemaleEnd",
        "Nitrogen/GaugePort",
        "Nitrogen/Valve",
        "Manifold/CenterPort",
        "Manifold/LowPort",
        "Manifold/LowValve",
    ):
        world.add(path)
    world.add("HVAC/GasValve/Fitting", fastener=FastenerConfig())
    return world


def create_empty_program(name: str = "New Training Program") -> Program:
    """Skeleton with one module, one task group and one placeholder step."""
    return Program(
        name=name,
        modules=[
            Module(
                name="New Module",
                task_groups=[
                    TaskGroup(
                        name="New Task Group",
                        steps=[Step(name="New Step", type=StepType.GRAB_AND_SNAP)],
                    )
                ],
            )
        ],
    )
