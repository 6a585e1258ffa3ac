# references.py
# Late-bound lookup of authored object references.
#
# Nothing is cached: a reference is resolved against the world on every
# use, so scene reloads and renamed parents are picked up transparently.

import logging
from typing import Any

from step_sequencer.models import ObjectReference, Step
from step_sequencer.world import World

logger = logging.getLogger(__name__)


class ReferenceNotFoundError(Exception):
    """Raised when a required reference has no live object behind it."""

    def __init__(self, step: Step, role: str, reference: ObjectReference) -> None:
        self.step = step
        self.role = role
        self.reference = reference
        super().__init__(f"Step {step.name!r}: {role} {str(reference)!r} not found in the world")


class ReferenceResolver:
    def __init__(self, world: World) -> None:
        self.world = world

    def resolve(self, reference: ObjectReference) -> Any | None:
        """Direct path match first, then a name search. None when unset or missing."""
        if not reference.is_set:
            return None
        if reference.path:
            handle = self.world.find(reference.path)
            if handle is not None:
                return handle
        name = reference.lookup_name
        handle = self.world.find_by_name(name) if name else None
        if handle is not None and reference.path:
            logger.debug("Resolved %r by name fallback", str(reference))
        return handle

    def require(self, reference: ObjectReference, step: Step, role: str) -> Any:
        handle = self.resolve(reference)
        if handle is None:
            raise ReferenceNotFoundError(step, role, reference)
        return handle

    @staticmethod
    def same_object(a: Any | None, b: Any | None) -> bool:
        return a is not None and a is b
