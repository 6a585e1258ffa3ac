# models.py
# Data contracts for the step sequencing engine.
# Pure schema and structural validation. Traversal and runtime state
# transitions live in hierarchy.py and controller.py.

from collections.abc import Iterator
from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class StepType(str, Enum):
    """Closed set of step variants. Handlers dispatch on these values."""

    GRAB = "grab"
    GRAB_AND_SNAP = "grab_and_snap"
    TURN_KNOB = "turn_knob"
    TIGHTEN_FASTENER = "tighten_fastener"
    LOOSEN_FASTENER = "loosen_fastener"
    INSTALL_FASTENER = "install_fastener"
    REMOVE_FASTENER = "remove_fastener"
    WAIT_FOR_CONDITION = "wait_for_condition"
    WAIT_FOR_SCRIPT_CONDITION = "wait_for_script_condition"
    SHOW_INSTRUCTION = "show_instruction"
    TELEPORT = "teleport"

    @property
    def is_snap_type(self) -> bool:
        """Place-into-socket operations whose destination can be pre-armed."""
        return self in (StepType.GRAB_AND_SNAP, StepType.INSTALL_FASTENER)

    @property
    def is_fastener(self) -> bool:
        return self in _FASTENER_TYPES

    @property
    def tightens(self) -> bool:
        return self in (StepType.TIGHTEN_FASTENER, StepType.INSTALL_FASTENER)

    @property
    def loosens(self) -> bool:
        return self in (StepType.LOOSEN_FASTENER, StepType.REMOVE_FASTENER)


_FASTENER_TYPES = frozenset(
    {
        StepType.TIGHTEN_FASTENER,
        StepType.LOOSEN_FASTENER,
        StepType.INSTALL_FASTENER,
        StepType.REMOVE_FASTENER,
    }
)


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"


class Framework(str, Enum):
    """Physical-interaction adapter present in the world."""

    NONE = "none"
    XRI = "xri"
    AUTO_HANDS = "auto_hands"

    @property
    def display_name(self) -> str:
        return {
            Framework.NONE: "No Framework Detected",
            Framework.XRI: "XR Interaction Toolkit",
            Framework.AUTO_HANDS: "Auto Hand",
        }[self]


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# ---------------------------------------------------------------------------
# References and parameters
# ---------------------------------------------------------------------------


class ObjectReference(BaseModel):
    """
    Weak, late-bound handle to an interactive object.

    Holds only the authored path/name; the live object is looked up by
    references.ReferenceResolver on every use.
    """

    path: str = Field(default="", description="Hierarchy path, e.g. 'Rig/Valve/Cap'.")
    name: str = Field(default="", description="Object name used as a fallback lookup.")

    @property
    def is_set(self) -> bool:
        return bool(self.path or self.name)

    @property
    def lookup_name(self) -> str:
        """Name used for the fallback search; defaults to the last path segment."""
        if self.name:
            return self.name
        return self.path.rsplit("/", 1)[-1]

    def __str__(self) -> str:
        return self.path or self.name or "None"


Vector3 = tuple[float, float, float]


class StepParameters(BaseModel):
    """Type-specific settings embedded in every step. Unused values are ignored."""

    target_angle: float = Field(default=0.0, description="turn_knob: target angle in degrees.")
    angle_tolerance: float = Field(default=5.0, description="turn_knob: allowed error in degrees.")
    rotation_axis: Vector3 = Field(default=(0.0, 1.0, 0.0), description="Fastener rotation axis.")
    tighten_threshold: float = Field(default=50.0, description="Degrees required to tighten.")
    loosen_threshold: float = Field(default=90.0, description="Degrees of reverse rotation to loosen.")
    fastener_angle_tolerance: float = Field(default=5.0, description="Fastener completion tolerance.")
    rotation_dampening: float | None = Field(
        default=None, description="Rotation friction override; None keeps the object's value."
    )
    wait_for_steps: list[int] = Field(
        default_factory=list, description="wait_for_condition: step indices in the same task group."
    )


class FastenerConfig(BaseModel):
    """Object-side fastener configuration as exposed by the world adapter."""

    rotation_axis: Vector3 = (0.0, 1.0, 0.0)
    tighten_threshold: float = 50.0
    loosen_threshold: float = 90.0
    angle_tolerance: float = 5.0
    rotation_dampening: float = 0.0


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


class Step(BaseModel):
    """Atomic unit of procedure progress."""

    name: str = Field(..., description="Unique within its task group.")
    type: StepType
    target: ObjectReference = Field(default_factory=ObjectReference)
    destination: ObjectReference = Field(default_factory=ObjectReference)
    socket: ObjectReference = Field(default_factory=ObjectReference)
    params: StepParameters = Field(default_factory=StepParameters)
    hint: str = Field(default="", description="Instruction text shown to the user.")
    is_optional: bool = False
    allow_parallel: bool = Field(
        default=False,
        description="May start alongside the previous step instead of waiting for it.",
    )
    status: StepStatus = Field(default=StepStatus.NOT_STARTED, exclude=True)

    # Steps are compared by identity; two steps with equal fields are distinct.
    def __eq__(self, other: object) -> bool:
        return self is other

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return f"Step({self.name!r}, {self.type.value}, {self.status.value})"

    def references(self) -> Iterator[tuple[str, ObjectReference]]:
        """Yield (role, reference) for every authored reference. Sockets count as destinations."""
        if self.target.is_set:
            yield "target", self.target
        if self.destination.is_set:
            yield "destination", self.destination
        if self.socket.is_set:
            yield "destination", self.socket

    def validation_errors(self) -> list[str]:
        """Structural problems that prevent this step from running."""
        errors: list[str] = []
        p = self.params

        def need(ref: ObjectReference, label: str) -> None:
            if not ref.is_set:
                errors.append(f"Missing {label}")

        if self.type in (StepType.GRAB, StepType.TURN_KNOB, StepType.WAIT_FOR_SCRIPT_CONDITION):
            need(self.target, "target object")
        elif self.type is StepType.GRAB_AND_SNAP:
            need(self.target, "target object")
            need(self.destination, "destination")
        elif self.type.is_fastener:
            need(self.target, "fastener object")
            need(self.socket, "socket")
        elif self.type is StepType.TELEPORT:
            need(self.target, "trigger button")
            need(self.destination, "teleport destination")
        elif self.type is StepType.WAIT_FOR_CONDITION:
            if not p.wait_for_steps:
                errors.append("No steps specified to wait for")
            elif any(i < 0 for i in p.wait_for_steps):
                errors.append("Wait step indices must be non-negative")
        elif self.type is StepType.SHOW_INSTRUCTION:
            if not self.hint.strip():
                errors.append("Missing instruction text")

        if self.type is StepType.TURN_KNOB and not 0 < p.angle_tolerance <= 180:
            errors.append(f"angle_tolerance {p.angle_tolerance} out of range (0, 180]")

        if self.type.is_fastener:
            if not 10 <= p.tighten_threshold <= 360:
                errors.append(f"tighten_threshold {p.tighten_threshold} out of range [10, 360]")
            if not 10 <= p.loosen_threshold <= 360:
                errors.append(f"loosen_threshold {p.loosen_threshold} out of range [10, 360]")
            if not 1 <= p.fastener_angle_tolerance <= 15:
                errors.append(
                    f"fastener_angle_tolerance {p.fastener_angle_tolerance} out of range [1, 15]"
                )
            if p.rotation_dampening is not None and not 0 <= p.rotation_dampening <= 10:
                errors.append(f"rotation_dampening {p.rotation_dampening} out of range [0, 10]")
            if not any(p.rotation_axis):
                errors.append("rotation_axis must be non-zero")

        return errors

    def is_valid(self) -> bool:
        return not self.validation_errors()


class TaskGroup(BaseModel):
    """Ordered steps managed together as the controller's current focus."""

    name: str
    description: str = ""
    steps: list[Step] = Field(default_factory=list)
    is_optional: bool = Field(default=False, description="May be skipped without blocking its module.")


class Module(BaseModel):
    name: str
    description: str = ""
    task_groups: list[TaskGroup] = Field(default_factory=list)


class Program(BaseModel):
    """Root of an authored procedure."""

    name: str
    description: str = ""
    modules: list[Module] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    location: str = Field(..., description="'Module/TaskGroup/Step' path of the offending node.")
    message: str
    severity: Severity = Severity.ERROR


class SequenceProgress(BaseModel):
    """Snapshot of where a running sequence is."""

    module_index: int = 0
    total_modules: int = 0
    module_name: str = ""
    task_group_index: int = 0
    total_task_groups: int = 0
    task_group_name: str = ""
    completed_steps: int = 0
    total_steps: int = 0
    is_complete: bool = False

    def overall_progress(self) -> float:
        if self.is_complete:
            return 1.0
        if self.total_modules == 0:
            return 0.0
        return self.module_index / self.total_modules

    def task_group_progress(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return self.completed_steps / self.total_steps
