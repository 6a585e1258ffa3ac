# controller.py
# Sequence Execution Controller
#
# The controller is the kernel. It owns the traversal cursor, the active set
# and the completion queue; handlers only report completions and the
# enablement machine only writes flags when asked.
#
# Control flow per completion:
#   handler → queue → stop handler → mark completed → recompute enablement
#   → notify → start next steps → recompute → task group / module check
#
# All terminal output goes through listeners (see display.ConsoleGuidance);
# nothing is formatted here.

import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from enum import Enum

from step_sequencer.config import EngineConfig
from step_sequencer.enablement import EnablementState, EnablementStateMachine
from step_sequencer.handlers import HandlerContext, HandlerRegistry, StepHandler, default_handlers
from step_sequencer.hierarchy import Hierarchy, InvalidTransition
from step_sequencer.models import (
    Framework,
    Module,
    Program,
    SequenceProgress,
    Step,
    StepStatus,
    TaskGroup,
    ValidationIssue,
)
from step_sequencer.references import ReferenceNotFoundError, ReferenceResolver
from step_sequencer.world import FrameworkDetector, StaticFrameworkDetector, World

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProgramValidationError(Exception):
    """Raised by start() when the program has structural errors. Nothing runs."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = issues
        super().__init__(f"Program has {len(issues)} validation error(s)")


class DispatchError(Exception):
    """Raised when no handler supports a step's type under the current framework. Always fatal."""

    def __init__(self, step: Step, framework: Framework) -> None:
        self.step = step
        self.framework = framework
        super().__init__(
            f"No handler for step {step.name!r} of type {step.type.value} "
            f"under {framework.display_name}"
        )


class ControllerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Guidance listeners
# ---------------------------------------------------------------------------


class GuidanceListener:
    """Receives controller notifications. Every hook is optional."""

    def sequence_started(self, program: Program) -> None: ...

    def task_group_started(self, module: Module, group: TaskGroup) -> None: ...

    def step_started(self, step: Step) -> None: ...

    def step_state_changed(self, step: Step, state: EnablementState) -> None: ...

    def step_completed(self, step: Step, reason: str) -> None: ...

    def task_group_completed(self, group: TaskGroup) -> None: ...

    def module_completed(self, module: Module) -> None: ...

    def sequence_completed(self, program: Program) -> None: ...

    def sequence_aborted(self, program: Program) -> None: ...

    def error_reported(self, step: Step | None, message: str) -> None: ...


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class SequenceController:
    """
    Runs one program at a time against a world.

    Example:
        world = SimulatedWorld(Framework.XRI)
        controller = SequenceController(world, listeners=[ConsoleGuidance()])
        controller.start(program)
        while controller.state is ControllerState.RUNNING:
            controller.tick()
    """

    def __init__(
        self,
        world: World,
        handlers: HandlerRegistry | Iterable[StepHandler] | None = None,
        detector: FrameworkDetector | None = None,
        config: EngineConfig | None = None,
        listeners: Iterable[GuidanceListener] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.world = world
        self.config = config or EngineConfig()
        if isinstance(handlers, HandlerRegistry):
            self.registry = handlers
        else:
            self.registry = HandlerRegistry(default_handlers() if handlers is None else handlers)
        self.detector = detector or self._default_detector()
        self.resolver = ReferenceResolver(world)
        self.enablement = EnablementStateMachine(world, self.resolver)
        self.listeners: list[GuidanceListener] = list(listeners)
        self.clock = clock

        self.state = ControllerState.IDLE
        self.program: Program | None = None
        self.hierarchy: Hierarchy | None = None
        self.active: list[Step] = []
        self.stalled: list[Step] = []

        self._groups: list[tuple[Module, TaskGroup]] = []
        self._group_index = -1
        self._handler_of: dict[Step, StepHandler] = {}
        self._queue: deque[tuple[Step, str]] = deque()
        self._holding = False

        for handler in self.registry:
            handler.add_completion_listener(self._on_step_completed)

    def _default_detector(self) -> FrameworkDetector:
        if self.config.framework is not None:
            return StaticFrameworkDetector(self.config.framework)
        if isinstance(self.world, FrameworkDetector):
            return self.world
        return StaticFrameworkDetector(Framework.NONE)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: GuidanceListener) -> None:
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener: GuidanceListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def _notify(self, event: str, *args) -> None:
        for listener in list(self.listeners):
            getattr(listener, event)(*args)

    def _report(self, step: Step | None, message: str) -> None:
        logger.error(message)
        self._notify("error_reported", step, message)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def current_module(self) -> Module | None:
        if 0 <= self._group_index < len(self._groups):
            return self._groups[self._group_index][0]
        return None

    @property
    def current_task_group(self) -> TaskGroup | None:
        if 0 <= self._group_index < len(self._groups):
            return self._groups[self._group_index][1]
        return None

    def completed_steps(self) -> list[Step]:
        if self.hierarchy is None:
            return []
        return [s for s in self.hierarchy.steps() if s.status is StepStatus.COMPLETED]

    def progress(self) -> SequenceProgress:
        if self.program is None:
            return SequenceProgress()
        modules = self.program.modules
        is_complete = self.state is ControllerState.COMPLETED
        progress = SequenceProgress(
            module_index=len(modules) if is_complete else 0,
            total_modules=len(modules),
            is_complete=is_complete,
        )

        module, group = self.current_module, self.current_task_group
        if module is None or group is None:
            return progress
        progress.module_index = next(i for i, m in enumerate(modules) if m is module)
        progress.module_name = module.name
        progress.task_group_index = next(i for i, g in enumerate(module.task_groups) if g is group)
        progress.total_task_groups = len(module.task_groups)
        progress.task_group_name = group.name
        progress.completed_steps = sum(1 for s in group.steps if s.status is StepStatus.COMPLETED)
        progress.total_steps = len(group.steps)
        return progress

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, program: Program) -> None:
        """
        Begin a fresh run of `program`.

        Raises ProgramValidationError (state unchanged) if the program has
        structural errors, and DispatchError if a leading step has no handler.
        """
        if self.state is ControllerState.RUNNING:
            raise InvalidTransition("A sequence is already running; abort it first")

        hierarchy = Hierarchy(program)
        issues = hierarchy.validate()
        if issues:
            for issue in issues:
                logger.error("%s: %s", issue.location, issue.message)
            raise ProgramValidationError(issues)

        self._stop_all_steps()
        hierarchy.reset()
        self.program = program
        self.hierarchy = hierarchy
        self.active = []
        self.stalled = []
        self._queue.clear()
        self._groups = hierarchy.task_groups()
        self._group_index = -1

        context = HandlerContext(self.world, self.resolver, hierarchy, self.config, self.clock)
        for handler in self.registry:
            handler.initialize(context)

        for warning in hierarchy.reference_warnings(self.resolver):
            logger.warning("%s: %s", warning.location, warning.message)

        self.state = ControllerState.RUNNING
        logger.info("Sequence %r started under %s", program.name, self.detector.current_framework().display_name)
        self._notify("sequence_started", program)

        with self._holding_completions():
            self._enter_next_group()
        self._drain()

    def tick(self, now: float | None = None) -> None:
        """Drive handler waits once, then process queued completions."""
        if self.state is not ControllerState.RUNNING:
            return
        now = self.clock() if now is None else now
        with self._holding_completions():
            for handler in self.registry:
                handler.poll(now)
        self._drain()

    def resume(self) -> list[Step]:
        """Retry steps stalled on missing references. Returns the steps that started."""
        if self.state is not ControllerState.RUNNING or not self.stalled:
            return []
        retry = list(self.stalled)
        self.stalled.clear()
        with self._holding_completions():
            self._start_ready_steps_and_recompute()
        self._drain()
        return [s for s in retry if s.status is not StepStatus.NOT_STARTED]

    def skip_task_group(self) -> None:
        group = self.current_task_group
        if self.state is not ControllerState.RUNNING or group is None:
            raise InvalidTransition("No task group is running")
        if not group.is_optional:
            raise InvalidTransition(f"Task group {group.name!r} is not optional and cannot be skipped")

        logger.info("Skipping optional task group %r", group.name)
        with self._holding_completions():
            self._close_group(skipped=True)
        self._drain()

    def abort(self) -> None:
        """Stop all active steps and restore interaction. Safe to call repeatedly."""
        if self.state is not ControllerState.RUNNING:
            return
        self._stop_all_steps()
        self._queue.clear()
        self.enablement.reset()
        self.state = ControllerState.ABORTED
        logger.info("Sequence %r aborted", self.program.name if self.program else "")
        if self.program is not None:
            self._notify("sequence_aborted", self.program)

    def shutdown(self) -> None:
        self.abort()
        for handler in self.registry:
            handler.cleanup()

    # ------------------------------------------------------------------
    # Completion queue
    # ------------------------------------------------------------------

    @contextmanager
    def _holding_completions(self) -> Iterator[None]:
        previous = self._holding
        self._holding = True
        try:
            yield
        finally:
            self._holding = previous

    def _on_step_completed(self, step: Step, reason: str) -> None:
        self._queue.append((step, reason))
        self._drain()

    def _drain(self) -> None:
        if self._holding:
            return
        with self._holding_completions():
            while self._queue and self.state is ControllerState.RUNNING:
                step, reason = self._queue.popleft()
                self._process_completion(step, reason)

    def _process_completion(self, step: Step, reason: str) -> None:
        if step.status is not StepStatus.ACTIVE or step not in self.active:
            logger.debug("Ignoring completion of %r: %s", step, reason)
            return

        handler = self._handler_of.pop(step, None)
        if handler is not None:
            handler.stop_step(step)
        self.hierarchy.mark_completed(step)
        self.active.remove(step)
        logger.info("Step completed: %s (%s)", self.hierarchy.location(step), reason)

        self._recompute()
        self._notify("step_completed", step, reason)

        group = self.current_task_group
        if group is not None and step in group.steps:
            self._start_ready_steps_and_recompute()
            self._check_group_complete()

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _enter_next_group(self) -> None:
        self._group_index += 1
        while self._group_index < len(self._groups):
            module = self._groups[self._group_index][0]
            rest = self._module_rest(self._group_index)
            if not all(g.is_optional for g in rest):
                break
            # Optional task groups never hold a module open.
            for group in rest:
                logger.info("Skipping optional task group %r", group.name)
            self._group_index += len(rest)
            logger.info("Module completed: %s", module.name)
            self._notify("module_completed", module)

        if self._group_index >= len(self._groups):
            self._finish()
            return

        module, group = self._groups[self._group_index]
        logger.info("Task group started: %s/%s", module.name, group.name)
        self._notify("task_group_started", module, group)
        self._start_ready_steps_and_recompute()
        self._check_group_complete()

    def _module_rest(self, index: int) -> list[TaskGroup]:
        """Task groups of the module at `index`, from `index` to the module's end."""
        module = self._groups[index][0]
        return [group for owner, group in self._groups[index:] if owner is module]

    def _start_ready_steps_and_recompute(self) -> None:
        # A DispatchError still leaves the steps started before it enabled.
        try:
            self._start_ready_steps()
        finally:
            self._recompute()

    def _start_ready_steps(self) -> None:
        """
        Start every step whose predecessor allows it, in order.

        Step 0 always may start; step i may start once step i-1 is completed,
        or has started and is optional, or has started and step i runs in
        parallel with it. The walk stops at the first step that may not.
        """
        group = self.current_task_group
        if group is None:
            return
        for index, step in enumerate(group.steps):
            if index > 0:
                previous = group.steps[index - 1]
                started = previous.status is not StepStatus.NOT_STARTED
                if not (
                    previous.status is StepStatus.COMPLETED
                    or (started and previous.is_optional)
                    or (started and step.allow_parallel)
                ):
                    break
            if step in self.stalled:
                break
            if step.status is StepStatus.NOT_STARTED:
                self._start_step(step)

    def _start_step(self, step: Step) -> bool:
        framework = self.detector.current_framework()
        handler = self.registry.find(step.type, framework)
        if handler is None:
            error = DispatchError(step, framework)
            self._report(step, str(error))
            raise error

        try:
            handler.start_step(step)
        except ReferenceNotFoundError as exc:
            handler.stop_step(step)
            self.stalled.append(step)
            self._report(step, f"{exc}; step stalled until resume()")
            return False

        self.hierarchy.mark_active(step)
        self.active.append(step)
        self._handler_of[step] = handler
        logger.info("Step started: %s", self.hierarchy.location(step))
        self._notify("step_started", step)
        return True

    def _check_group_complete(self) -> None:
        group = self.current_task_group
        if group is None or self.state is not ControllerState.RUNNING:
            return
        if any(not s.is_optional and s.status is not StepStatus.COMPLETED for s in group.steps):
            return
        self._close_group()

    def _close_group(self, skipped: bool = False) -> None:
        module, group = self._groups[self._group_index]

        # Leftover optional steps keep their status but stop listening.
        for step in [s for s in self.active if s in group.steps]:
            handler = self._handler_of.pop(step, None)
            if handler is not None:
                handler.stop_step(step)
            self.active.remove(step)
        self.stalled = [s for s in self.stalled if s not in group.steps]

        if not skipped:
            logger.info("Task group completed: %s/%s", module.name, group.name)
            self._notify("task_group_completed", group)

        next_index = self._group_index + 1
        if next_index >= len(self._groups) or self._groups[next_index][0] is not module:
            logger.info("Module completed: %s", module.name)
            self._notify("module_completed", module)

        self._enter_next_group()

    def _finish(self) -> None:
        self._group_index = len(self._groups)
        self._recompute()
        self.state = ControllerState.COMPLETED
        logger.info("Sequence %r completed", self.program.name)
        self._notify("sequence_completed", self.program)

    def _stop_all_steps(self) -> None:
        for step, handler in list(self._handler_of.items()):
            handler.stop_step(step)
        self._handler_of.clear()
        self.active = []

    def _recompute(self) -> None:
        if self.hierarchy is None:
            return
        changes = self.enablement.recompute(
            self.hierarchy,
            self.current_task_group,
            self.active,
            self.completed_steps(),
        )
        for step, state in changes:
            self._notify("step_state_changed", step, state)
