# enablement.py
# Decides which objects may be interacted with right now.
#
# States are recomputed from scratch after every transition; nothing is
# patched incrementally. Flags are derived per resolved handle and written
# to the world for every handle on every recompute, so a recompute from the
# same inputs always leaves the world in the same state.
#
# Precedence when rules disagree: a handle is on if any step wants it on,
# and an occupied object is never switched off, whatever role it plays.
# Neither retention nor occupancy can ever disable a handle.

import logging
from collections.abc import Collection
from enum import Enum
from typing import Any

from step_sequencer.hierarchy import Hierarchy
from step_sequencer.models import Step, StepStatus, TaskGroup
from step_sequencer.references import ReferenceResolver
from step_sequencer.world import World

logger = logging.getLogger(__name__)


class EnablementState(str, Enum):
    LOCKED = "locked"
    PREPARED = "prepared"    # destination armed ahead of the step's own start
    ACTIVE = "active"
    COMPLETED = "completed"
    RETAINED = "retained"    # completed, but a pending step still needs its objects


TARGET_ON = frozenset({EnablementState.ACTIVE, EnablementState.RETAINED})
DESTINATION_ON = frozenset({EnablementState.ACTIVE, EnablementState.PREPARED, EnablementState.RETAINED})


# ---------------------------------------------------------------------------
# Pure state computation
# ---------------------------------------------------------------------------


def lookahead(hierarchy: Hierarchy, step: Step) -> list[Step]:
    """Upcoming steps visible from `step`; never crosses a non-parallel step."""
    visible: list[Step] = []
    for later in hierarchy.steps_after(step):
        if later.status is StepStatus.COMPLETED or later.is_optional:
            continue
        visible.append(later)
        if not later.allow_parallel:
            break
    return visible


def _handles(step: Step, resolver: ReferenceResolver) -> list[Any]:
    handles = []
    for _, reference in step.references():
        handle = resolver.resolve(reference)
        if handle is not None:
            handles.append(handle)
    return handles


def _shares_object(a: Step, b: Step, resolver: ReferenceResolver) -> bool:
    theirs = _handles(b, resolver)
    return any(ReferenceResolver.same_object(h, other) for h in _handles(a, resolver) for other in theirs)


def compute_states(
    hierarchy: Hierarchy,
    current_group: TaskGroup | None,
    active: Collection[Step],
    completed: Collection[Step],
    resolver: ReferenceResolver,
) -> dict[Step, EnablementState]:
    states: dict[Step, EnablementState] = {}
    group_steps = current_group.steps if current_group is not None else []

    for step in hierarchy.steps():
        if step in completed:
            states[step] = EnablementState.COMPLETED
        else:
            states[step] = EnablementState.LOCKED

    for step in group_steps:
        if step in active:
            states[step] = EnablementState.ACTIVE

    for step in group_steps:
        if step not in active:
            continue
        for upcoming in lookahead(hierarchy, step):
            if upcoming.type.is_snap_type and upcoming not in active:
                states[upcoming] = EnablementState.PREPARED

    for index, step in enumerate(group_steps):
        if step not in completed:
            continue
        needed_by = [s for s in active if s is not step]
        needed_by += [s for s in group_steps[index + 1 :] if s not in completed and s not in active]
        if any(_shares_object(step, other, resolver) for other in needed_by):
            states[step] = EnablementState.RETAINED

    return states


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class EnablementStateMachine:
    """Sole writer of interaction flags."""

    def __init__(self, world: World, resolver: ReferenceResolver) -> None:
        self.world = world
        self.resolver = resolver
        self.states: dict[Step, EnablementState] = {}
        self.flags: dict[int, bool] = {}
        self._handles: dict[int, Any] = {}

    def state_of(self, step: Step) -> EnablementState:
        return self.states.get(step, EnablementState.LOCKED)

    def is_enabled(self, handle: Any) -> bool | None:
        """Last flag written for `handle`, or None if it is not managed."""
        return self.flags.get(id(handle))

    def recompute(
        self,
        hierarchy: Hierarchy,
        current_group: TaskGroup | None,
        active: Collection[Step],
        completed: Collection[Step],
    ) -> list[tuple[Step, EnablementState]]:
        states = compute_states(hierarchy, current_group, active, completed, self.resolver)

        wanted: dict[int, bool] = {}
        handles: dict[int, Any] = {}
        for step, state in states.items():
            for role, reference in step.references():
                handle = self.resolver.resolve(reference)
                if handle is None:
                    continue
                key = id(handle)
                handles[key] = handle
                on = state in (DESTINATION_ON if role == "destination" else TARGET_ON)
                wanted[key] = wanted.get(key, False) or on

        for key, on in wanted.items():
            if not on and self.world.is_occupied(handles[key]):
                logger.debug("Keeping occupied %r enabled", handles[key])
                wanted[key] = True

        for key, on in wanted.items():
            self.world.set_interaction_enabled(handles[key], on)

        changes = [
            (step, state)
            for step, state in states.items()
            if self.states.get(step, EnablementState.LOCKED) is not state
        ]
        for step, state in changes:
            logger.debug("%s → %s", step.name, state.value)

        self.states = states
        self.flags = wanted
        self._handles.update(handles)
        return changes

    def reset(self) -> None:
        """Re-enable every handle this machine has ever managed and forget all state."""
        for handle in self._handles.values():
            self.world.set_interaction_enabled(handle, True)
        self.states = {}
        self.flags = {}
        self._handles = {}
