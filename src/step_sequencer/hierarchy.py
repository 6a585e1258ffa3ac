# hierarchy.py
# Read-only traversal over a Program plus the only status mutation points.
#
# The controller owns the traversal cursor; this module only answers
# "what comes after what" and guards NotStarted → Active → Completed.

from collections import Counter

from step_sequencer.models import (
    Module,
    Program,
    Severity,
    Step,
    StepStatus,
    TaskGroup,
    ValidationIssue,
)


class InvalidTransition(Exception):
    """Raised on an illegal status change or controller operation."""


class Hierarchy:
    """
    Index over a Program.

    Built once per run; the tree itself is never restructured while the
    index is alive, only step statuses change.
    """

    def __init__(self, program: Program) -> None:
        self.program = program
        self._groups: list[tuple[Module, TaskGroup]] = []
        self._group_of: dict[Step, TaskGroup] = {}
        self._module_of: dict[int, Module] = {}
        self._steps: list[Step] = []

        for module in program.modules:
            for group in module.task_groups:
                self._groups.append((module, group))
                self._module_of[id(group)] = module
                for step in group.steps:
                    self._group_of[step] = group
                    self._steps.append(step)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def steps(self) -> list[Step]:
        return list(self._steps)

    def task_groups(self) -> list[tuple[Module, TaskGroup]]:
        return list(self._groups)

    def parent_task_group(self, step: Step) -> TaskGroup:
        try:
            return self._group_of[step]
        except KeyError:
            raise KeyError(f"Step {step.name!r} is not part of program {self.program.name!r}") from None

    def parent_module(self, group: TaskGroup) -> Module:
        return self._module_of[id(group)]

    def index_in_group(self, step: Step) -> int:
        return self.parent_task_group(step).steps.index(step)

    def next_step(self, step: Step) -> Step | None:
        """The step right after `step` in its task group, if any."""
        group = self.parent_task_group(step)
        index = group.steps.index(step)
        if index + 1 < len(group.steps):
            return group.steps[index + 1]
        return None

    def steps_after(self, step: Step) -> list[Step]:
        group = self.parent_task_group(step)
        return group.steps[group.steps.index(step) + 1 :]

    def first_pending_step(self) -> Step | None:
        for step in self._steps:
            if step.status is StepStatus.NOT_STARTED:
                return step
        return None

    def location(self, step: Step) -> str:
        group = self.parent_task_group(step)
        module = self.parent_module(group)
        return f"{module.name}/{group.name}/{step.name}"

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def mark_active(self, step: Step) -> None:
        if step.status is not StepStatus.NOT_STARTED:
            raise InvalidTransition(
                f"Cannot activate {self.location(step)}: status is {step.status.value}"
            )
        step.status = StepStatus.ACTIVE

    def mark_completed(self, step: Step) -> None:
        if step.status is not StepStatus.ACTIVE:
            raise InvalidTransition(
                f"Cannot complete {self.location(step)}: status is {step.status.value}"
            )
        step.status = StepStatus.COMPLETED

    def reset(self) -> None:
        for step in self._steps:
            step.status = StepStatus.NOT_STARTED

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[ValidationIssue]:
        """Collect structural errors for the whole tree. Never raises."""
        issues: list[ValidationIssue] = []

        for module, group in self._groups:
            counts = Counter(step.name for step in group.steps)
            for name, count in counts.items():
                if count > 1:
                    issues.append(
                        ValidationIssue(
                            location=f"{module.name}/{group.name}",
                            message=f"Duplicate step name {name!r} ({count} occurrences)",
                        )
                    )

            for step in group.steps:
                for message in step.validation_errors():
                    issues.append(
                        ValidationIssue(location=f"{module.name}/{group.name}/{step.name}", message=message)
                    )

        return issues

    def reference_warnings(self, resolver) -> list[ValidationIssue]:
        """Authored references that do not resolve right now. Advisory only."""
        warnings: list[ValidationIssue] = []
        for step in self._steps:
            for role, reference in step.references():
                if resolver.resolve(reference) is None:
                    warnings.append(
                        ValidationIssue(
                            location=self.location(step),
                            message=f"{role} reference {str(reference)!r} does not resolve",
                            severity=Severity.WARNING,
                        )
                    )
        return warnings
