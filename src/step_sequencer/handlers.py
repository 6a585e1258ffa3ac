# handlers.py
# Step handler contract, registry and the built-in handlers.
#
# Handlers translate world events into step completions. They never touch
# step status or interaction flags: completion is reported to the listeners
# the controller registers, and the controller does the rest.
#
# Dispatch is by capability sets (step types x frameworks); the registry
# returns the first registered handler that claims both.

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from step_sequencer.models import Framework, Step, StepStatus, StepType
from step_sequencer.references import ReferenceResolver
from step_sequencer.waits import PollWait, WaitStatus
from step_sequencer.world import Unsubscribe, World, WorldEvent

if TYPE_CHECKING:
    from step_sequencer.config import EngineConfig
    from step_sequencer.hierarchy import Hierarchy

logger = logging.getLogger(__name__)

CompletionListener = Callable[[Step, str], None]

ALL_FRAMEWORKS = frozenset(Framework)
INTERACTION_FRAMEWORKS = frozenset({Framework.XRI, Framework.AUTO_HANDS})


@dataclass
class HandlerContext:
    world: World
    resolver: ReferenceResolver
    hierarchy: "Hierarchy"
    config: "EngineConfig"
    clock: Callable[[], float] = time.monotonic


# ---------------------------------------------------------------------------
# Base handler
# ---------------------------------------------------------------------------


class StepHandler:
    """
    Base class for completion detectors.

    Subclasses declare `step_types` / `frameworks` and implement `_start`.
    `start_step` always clears a step's previous subscriptions before
    subscribing again, and `stop_step` is safe to call at any time.
    """

    step_types: frozenset[StepType] = frozenset()
    frameworks: frozenset[Framework] = INTERACTION_FRAMEWORKS

    def __init__(self) -> None:
        self.context: HandlerContext | None = None
        self._completion_listeners: list[CompletionListener] = []
        self._active: set[Step] = set()
        self._subscriptions: dict[Step, list[Unsubscribe]] = {}

    def __repr__(self) -> str:
        return type(self).__name__

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def can_handle(self, step_type: StepType) -> bool:
        return step_type in self.step_types

    def supports_framework(self, framework: Framework) -> bool:
        return framework in self.frameworks

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, context: HandlerContext) -> None:
        self.context = context

    @property
    def world(self) -> World:
        return self._require_context().world

    @property
    def resolver(self) -> ReferenceResolver:
        return self._require_context().resolver

    def _require_context(self) -> HandlerContext:
        if self.context is None:
            raise RuntimeError(f"{self!r} used before initialize()")
        return self.context

    def start_step(self, step: Step) -> None:
        self.stop_step(step)
        self._active.add(step)
        logger.debug("%r starting %r", self, step)
        self._start(step)

    def _start(self, step: Step) -> None:
        raise NotImplementedError

    def stop_step(self, step: Step) -> None:
        self._active.discard(step)
        for unsubscribe in self._subscriptions.pop(step, []):
            unsubscribe()
        self._stop(step)

    def _stop(self, step: Step) -> None:
        """Hook for per-step state beyond world subscriptions."""

    def poll(self, now: float) -> None:
        """Cooperative tick; handlers with waits override this."""

    def cleanup(self) -> None:
        for step in list(self._active | set(self._subscriptions)):
            self.stop_step(step)
        self._completion_listeners.clear()

    def is_running(self, step: Step) -> bool:
        return step in self._active

    # ------------------------------------------------------------------
    # Completion reporting
    # ------------------------------------------------------------------

    def add_completion_listener(self, listener: CompletionListener) -> None:
        if listener not in self._completion_listeners:
            self._completion_listeners.append(listener)

    def remove_completion_listener(self, listener: CompletionListener) -> None:
        if listener in self._completion_listeners:
            self._completion_listeners.remove(listener)

    def _complete(self, step: Step, reason: str) -> None:
        # Late events for a stopped step are dropped.
        if step not in self._active:
            return
        self.stop_step(step)
        logger.debug("%r completed %r: %s", self, step, reason)
        for listener in list(self._completion_listeners):
            listener(step, reason)

    def _subscribe(self, step: Step, handle: Any, event: WorldEvent, callback: Callable[[Any], None]) -> None:
        unsubscribe = self.world.subscribe(handle, event, callback)
        self._subscriptions.setdefault(step, []).append(unsubscribe)
        logger.debug("%r subscribed %r to %s", self, step, event.value)

    def _unsubscribe(self, step: Step) -> None:
        for unsubscribe in self._subscriptions.pop(step, []):
            unsubscribe()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class HandlerRegistry:
    """Ordered handler list; the first capable handler wins."""

    def __init__(self, handlers: Iterable[StepHandler] = ()) -> None:
        self._handlers: list[StepHandler] = list(handlers)

    def register(self, handler: StepHandler) -> None:
        self._handlers.append(handler)

    def find(self, step_type: StepType, framework: Framework) -> StepHandler | None:
        for handler in self._handlers:
            if handler.can_handle(step_type) and handler.supports_framework(framework):
                return handler
        return None

    def supported_types(self, framework: Framework) -> set[StepType]:
        return {t for t in StepType if self.find(t, framework) is not None}

    def __iter__(self) -> Iterator[StepHandler]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


class GrabStepHandler(StepHandler):
    step_types = frozenset({StepType.GRAB})

    def _start(self, step: Step) -> None:
        target = self.resolver.require(step.target, step, "target")
        self._subscribe(
            step, target, WorldEvent.GRABBED, lambda _: self._complete(step, f"Grabbed {step.target}")
        )


class SnapStepHandler(StepHandler):
    step_types = frozenset({StepType.GRAB_AND_SNAP})

    def _start(self, step: Step) -> None:
        target = self.resolver.require(step.target, step, "target")
        destination = self.resolver.require(step.destination, step, "destination")

        def on_snapped(placed: Any) -> None:
            if ReferenceResolver.same_object(placed, target):
                self._complete(step, f"Snapped {step.target} into {step.destination}")

        self._subscribe(step, destination, WorldEvent.SNAPPED, on_snapped)


def angle_within(current: float, target: float, tolerance: float) -> bool:
    """Wrapped angular distance check, so 359 is within 2 degrees of 1."""
    return abs((current - target + 180.0) % 360.0 - 180.0) <= tolerance


class KnobStepHandler(StepHandler):
    step_types = frozenset({StepType.TURN_KNOB})

    def _start(self, step: Step) -> None:
        target = self.resolver.require(step.target, step, "target")
        p = step.params

        def on_angle(angle: float) -> None:
            if angle_within(angle, p.target_angle, p.angle_tolerance):
                self._complete(step, f"Knob at {angle:.1f}° (target {p.target_angle:.1f}°)")

        self._subscribe(step, target, WorldEvent.ANGLE_CHANGED, on_angle)


class PollingStepHandler(StepHandler):
    """Handler whose steps complete when a PollWait reports READY."""

    def __init__(self) -> None:
        super().__init__()
        self._waits: dict[Step, PollWait] = {}

    def _stop(self, step: Step) -> None:
        self._waits.pop(step, None)

    def poll(self, now: float) -> None:
        for step, wait in list(self._waits.items()):
            status = wait.poll(now)
            if status is WaitStatus.READY:
                self._on_ready(step)
            elif status is WaitStatus.TIMED_OUT:
                self._on_timeout(step, wait)

    def _on_ready(self, step: Step) -> None:
        raise NotImplementedError

    def _on_timeout(self, step: Step, wait: PollWait) -> None:
        pass


class WaitForStepsHandler(PollingStepHandler):
    """Completes once every listed step of the same task group is completed."""

    step_types = frozenset({StepType.WAIT_FOR_CONDITION})
    frameworks = ALL_FRAMEWORKS

    def _start(self, step: Step) -> None:
        ctx = self._require_context()
        group = ctx.hierarchy.parent_task_group(step)
        awaited: list[Step] = []
        for index in step.params.wait_for_steps:
            if 0 <= index < len(group.steps):
                awaited.append(group.steps[index])
            else:
                logger.warning(
                    "%s: wait index %d is outside task group %r (%d steps); ignored",
                    step.name,
                    index,
                    group.name,
                    len(group.steps),
                )

        self._waits[step] = PollWait(
            lambda: all(s.status is StepStatus.COMPLETED for s in awaited),
            interval=ctx.config.poll_interval_s,
        )

    def _on_ready(self, step: Step) -> None:
        count = len(step.params.wait_for_steps)
        self._complete(step, f"Wait conditions met ({count} steps)")


class ScriptConditionHandler(PollingStepHandler):
    step_types = frozenset({StepType.WAIT_FOR_SCRIPT_CONDITION})
    frameworks = frozenset({Framework.AUTO_HANDS})

    def _start(self, step: Step) -> None:
        ctx = self._require_context()
        target = self.resolver.require(step.target, step, "target")
        self.world.reset_condition(target)
        self._waits[step] = PollWait(
            lambda: self.world.condition_met(target),
            interval=ctx.config.condition_poll_interval_s,
        )

    def _on_ready(self, step: Step) -> None:
        self._complete(step, f"Condition met on {step.target}")


class InstructionHandler(StepHandler):
    step_types = frozenset({StepType.SHOW_INSTRUCTION})
    frameworks = ALL_FRAMEWORKS

    def _start(self, step: Step) -> None:
        self._complete(step, "Instruction shown")


class TeleportStepHandler(StepHandler):
    step_types = frozenset({StepType.TELEPORT})
    frameworks = frozenset({Framework.AUTO_HANDS})

    def _start(self, step: Step) -> None:
        button = self.resolver.require(step.target, step, "target")
        anchor = self.resolver.require(step.destination, step, "destination")

        def on_pressed(_: Any) -> None:
            if not self.is_running(step):
                return
            self.world.teleport_to(anchor)
            self._complete(step, f"Teleported to {step.destination}")

        self._subscribe(step, button, WorldEvent.BUTTON_PRESSED, on_pressed)


def default_handlers(framework: Framework | None = None) -> list[StepHandler]:
    """
    Fresh instances of the built-in handlers, in registration order.

    With a framework, only handlers that support it are returned.
    """
    from step_sequencer.fastener import FastenerStepHandler

    handlers: list[StepHandler] = [
        GrabStepHandler(),
        SnapStepHandler(),
        KnobStepHandler(),
        FastenerStepHandler(),
        WaitForStepsHandler(),
        ScriptConditionHandler(),
        InstructionHandler(),
        TeleportStepHandler(),
    ]
    if framework is None:
        return handlers
    return [h for h in handlers if h.supports_framework(framework)]
