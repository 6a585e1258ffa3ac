# fastener.py
# Tighten / loosen / install / remove handler.
#
# Start sequence for a fastener step:
#   resolve target + socket → apply parameter overrides
#   → wait for the required locked sub-state → subscribe to the completion event
#
# The sub-state wait is a PollWait driven by the controller's tick. A timeout
# only logs a warning and restarts the timer; it never fails the step.

import logging
from typing import Any

from step_sequencer.handlers import INTERACTION_FRAMEWORKS, PollingStepHandler
from step_sequencer.models import FastenerConfig, Step, StepType
from step_sequencer.waits import PollWait
from step_sequencer.world import FastenerState, FastenerSubstate, WorldEvent

logger = logging.getLogger(__name__)

REQUIRED_STATE: dict[StepType, tuple[FastenerState, FastenerSubstate]] = {
    StepType.TIGHTEN_FASTENER: (FastenerState.LOCKED, FastenerSubstate.LOOSE),
    StepType.INSTALL_FASTENER: (FastenerState.LOCKED, FastenerSubstate.LOOSE),
    StepType.LOOSEN_FASTENER: (FastenerState.LOCKED, FastenerSubstate.TIGHT),
    StepType.REMOVE_FASTENER: (FastenerState.LOCKED, FastenerSubstate.LOOSE),
}

COMPLETION_EVENT: dict[StepType, WorldEvent] = {
    StepType.TIGHTEN_FASTENER: WorldEvent.TIGHTENED,
    StepType.INSTALL_FASTENER: WorldEvent.TIGHTENED,
    StepType.LOOSEN_FASTENER: WorldEvent.LOOSENED,
    StepType.REMOVE_FASTENER: WorldEvent.REMOVED,
}


def derive_config(current: FastenerConfig, step: Step) -> FastenerConfig | None:
    """
    Object config with the step's overrides applied, or None if nothing changes.

    Only the threshold for the step's direction is touched: tightening steps
    never overwrite loosen_threshold and vice versa.
    """
    p = step.params
    candidates: dict[str, Any] = {
        "rotation_axis": tuple(p.rotation_axis),
        "angle_tolerance": p.fastener_angle_tolerance,
    }
    if p.rotation_dampening is not None:
        candidates["rotation_dampening"] = p.rotation_dampening
    if step.type.tightens:
        candidates["tighten_threshold"] = p.tighten_threshold
    elif step.type.loosens:
        candidates["loosen_threshold"] = p.loosen_threshold

    changes = {key: value for key, value in candidates.items() if getattr(current, key) != value}
    if not changes:
        return None
    return current.model_copy(update=changes)


class FastenerStepHandler(PollingStepHandler):
    step_types = frozenset(REQUIRED_STATE)
    frameworks = INTERACTION_FRAMEWORKS

    def __init__(self) -> None:
        super().__init__()
        self._targets: dict[Step, Any] = {}

    def _start(self, step: Step) -> None:
        ctx = self._require_context()
        target = self.resolver.require(step.target, step, "target")
        self.resolver.require(step.socket, step, "socket")
        self._targets[step] = target

        self._apply_overrides(step, target)

        if self._in_required_state(step, target):
            self._arm(step, target)
            return

        self._waits[step] = PollWait(
            lambda: self._in_required_state(step, target),
            interval=ctx.config.poll_interval_s,
            timeout=ctx.config.substate_timeout_s,
            started_at=ctx.clock(),
        )
        logger.debug("%s: waiting for %s/%s", step.name, *(s.value for s in REQUIRED_STATE[step.type]))

    def _stop(self, step: Step) -> None:
        super()._stop(step)
        self._targets.pop(step, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_overrides(self, step: Step, target: Any) -> None:
        current = self.world.fastener_config(target)
        if current is None:
            logger.warning("%s: %s has no fastener configuration; overrides skipped", step.name, step.target)
            return
        updated = derive_config(current, step)
        if updated is not None:
            self.world.configure_fastener(target, updated)
            logger.debug("%s: fastener config overridden -> %s", step.name, updated)

    def _in_required_state(self, step: Step, target: Any) -> bool:
        return self.world.fastener_state(target) == REQUIRED_STATE[step.type]

    def _arm(self, step: Step, target: Any) -> None:
        event = COMPLETION_EVENT[step.type]
        self._unsubscribe(step)
        self._subscribe(step, target, event, lambda _: self._complete(step, f"Fastener {event.value}"))

    def _on_ready(self, step: Step) -> None:
        self._waits.pop(step, None)
        target = self._targets.get(step)
        if target is not None:
            self._arm(step, target)

    def _on_timeout(self, step: Step, wait: PollWait) -> None:
        state, substate = REQUIRED_STATE[step.type]
        logger.warning(
            "%s: %s not %s/%s after %.1fs; still waiting",
            step.name,
            step.target,
            state.value,
            substate.value,
            wait.timeout,
        )
