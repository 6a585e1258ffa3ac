# world.py
# Contracts the engine consumes from the physical world, plus an in-memory
# scene graph that implements them.
#
# The engine never touches physics or input directly: it resolves handles,
# toggles interaction, reads occupancy/fastener state and subscribes to
# abstract world events. SimulatedWorld plays the role of a real adapter in
# tests and in the demo runner.

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from step_sequencer.models import FastenerConfig, Framework

Unsubscribe = Callable[[], None]


class WorldEvent(str, Enum):
    GRABBED = "grabbed"                # on the object; payload None
    RELEASED = "released"              # on the object; payload None
    SNAPPED = "snapped"                # on the socket; payload = placed object
    UNSNAPPED = "unsnapped"            # on the socket; payload = removed object
    TIGHTENED = "tightened"            # on the fastener
    LOOSENED = "loosened"              # on the fastener
    REMOVED = "removed"                # on the fastener, after leaving its socket
    ANGLE_CHANGED = "angle_changed"    # on the knob; payload = angle in degrees
    BUTTON_PRESSED = "button_pressed"  # on the button


class FastenerState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


class FastenerSubstate(str, Enum):
    NONE = "none"
    LOOSE = "loose"
    TIGHT = "tight"


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class World(ABC):
    """Physical adapter consumed by the engine. Handles are opaque objects."""

    @abstractmethod
    def find(self, path: str) -> Any | None:
        """Direct hierarchy-path lookup."""

    @abstractmethod
    def find_by_name(self, name: str) -> Any | None:
        """Name search across the current scene graph."""

    @abstractmethod
    def set_interaction_enabled(self, handle: Any, enabled: bool) -> None: ...

    @abstractmethod
    def is_interaction_enabled(self, handle: Any) -> bool: ...

    @abstractmethod
    def is_occupied(self, handle: Any) -> bool:
        """True if something is currently attached to the socket `handle`."""

    @abstractmethod
    def subscribe(self, handle: Any, event: WorldEvent, callback: Callable[[Any], None]) -> Unsubscribe:
        """Register `callback(payload)`; the returned callable removes it and is idempotent."""

    @abstractmethod
    def fastener_config(self, handle: Any) -> FastenerConfig | None: ...

    @abstractmethod
    def configure_fastener(self, handle: Any, config: FastenerConfig) -> None: ...

    @abstractmethod
    def fastener_state(self, handle: Any) -> tuple[FastenerState, FastenerSubstate]: ...

    @abstractmethod
    def reset_condition(self, handle: Any) -> None: ...

    @abstractmethod
    def condition_met(self, handle: Any) -> bool: ...

    @abstractmethod
    def teleport_to(self, handle: Any) -> None: ...


class FrameworkDetector(ABC):
    @abstractmethod
    def current_framework(self) -> Framework: ...


class StaticFrameworkDetector(FrameworkDetector):
    """Detector for setups where the framework is known up front."""

    def __init__(self, framework: Framework) -> None:
        self.framework = framework

    def current_framework(self) -> Framework:
        return self.framework


# ---------------------------------------------------------------------------
# In-memory scene graph
# ---------------------------------------------------------------------------


class WorldObject:
    """A node of the simulated scene graph."""

    def __init__(self, name: str, parent: "WorldObject | None" = None) -> None:
        self.name = name
        self.parent = parent
        self.children: list[WorldObject] = []
        self.alive = True
        self.interaction_enabled = True
        self.occupant: WorldObject | None = None   # socket side
        self.socket: WorldObject | None = None     # placed-object side
        self.fastener: FastenerConfig | None = None
        self.fastener_state = FastenerState.UNLOCKED
        self.fastener_substate = FastenerSubstate.NONE
        self.rotation = 0.0
        self.angle = 0.0
        self.condition = False

    @property
    def path(self) -> str:
        parts = [self.name]
        node = self.parent
        while node is not None:
            parts.append(node.name)
            node = node.parent
        return "/".join(reversed(parts))

    def __repr__(self) -> str:
        return f"WorldObject({self.path!r})"


class SimulatedWorld(World, FrameworkDetector):
    """
    In-memory world used by the demo and the test-suite.

    User actions (grab, snap, rotate, ...) fire the same events a real
    framework adapter would. Actions on objects whose interaction is
    disabled are refused and return False.
    """

    def __init__(self, framework: Framework = Framework.XRI) -> None:
        self.framework = framework
        self.player_location: WorldObject | None = None
        self.enable_log: list[tuple[WorldObject, bool]] = []
        self._roots: list[WorldObject] = []
        self._listeners: dict[tuple[int, WorldEvent], list[Callable[[Any], None]]] = {}

    # ------------------------------------------------------------------
    # Scene construction
    # ------------------------------------------------------------------

    def add(self, path: str, fastener: FastenerConfig | None = None) -> WorldObject:
        """Create the object at `path`, creating missing parents on the way."""
        if not path:
            raise ValueError("Object path must not be empty")
        parent: WorldObject | None = None
        node: WorldObject | None = None
        for part in path.split("/"):
            siblings = parent.children if parent is not None else self._roots
            node = next((c for c in siblings if c.name == part), None)
            if node is None:
                node = WorldObject(part, parent)
                siblings.append(node)
            parent = node
        if fastener is not None:
            node.fastener = fastener.model_copy()
        return node

    def destroy(self, obj: WorldObject) -> None:
        siblings = obj.parent.children if obj.parent is not None else self._roots
        if obj in siblings:
            siblings.remove(obj)
        stack = [obj]
        while stack:
            node = stack.pop()
            node.alive = False
            for key in [k for k in self._listeners if k[0] == id(node)]:
                del self._listeners[key]
            stack.extend(node.children)

    def rename(self, obj: WorldObject, new_name: str) -> None:
        obj.name = new_name

    def clear(self) -> None:
        """Tear the whole scene down, as a scene reload would."""
        for root in list(self._roots):
            self.destroy(root)

    # ------------------------------------------------------------------
    # World contract
    # ------------------------------------------------------------------

    def find(self, path: str) -> WorldObject | None:
        if not path:
            return None
        nodes = self._roots
        found: WorldObject | None = None
        for part in path.split("/"):
            found = next((n for n in nodes if n.name == part), None)
            if found is None:
                return None
            nodes = found.children
        return found

    def find_by_name(self, name: str) -> WorldObject | None:
        if not name:
            return None
        stack = list(reversed(self._roots))
        while stack:
            node = stack.pop()
            if node.name == name:
                return node
            stack.extend(reversed(node.children))
        return None

    def set_interaction_enabled(self, handle: WorldObject, enabled: bool) -> None:
        handle.interaction_enabled = enabled
        self.enable_log.append((handle, enabled))

    def is_interaction_enabled(self, handle: WorldObject) -> bool:
        return handle.interaction_enabled

    def is_occupied(self, handle: WorldObject) -> bool:
        return handle.occupant is not None

    def subscribe(self, handle: WorldObject, event: WorldEvent, callback: Callable[[Any], None]) -> Unsubscribe:
        key = (id(handle), event)
        self._listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscriber_count(self, handle: WorldObject, event: WorldEvent | None = None) -> int:
        return sum(
            len(callbacks)
            for (obj_id, evt), callbacks in self._listeners.items()
            if obj_id == id(handle) and (event is None or evt is event)
        )

    def fastener_config(self, handle: WorldObject) -> FastenerConfig | None:
        return handle.fastener.model_copy() if handle.fastener is not None else None

    def configure_fastener(self, handle: WorldObject, config: FastenerConfig) -> None:
        handle.fastener = config.model_copy()

    def fastener_state(self, handle: WorldObject) -> tuple[FastenerState, FastenerSubstate]:
        return handle.fastener_state, handle.fastener_substate

    def reset_condition(self, handle: WorldObject) -> None:
        handle.condition = False

    def condition_met(self, handle: WorldObject) -> bool:
        return handle.condition

    def teleport_to(self, handle: WorldObject) -> None:
        self.player_location = handle

    def current_framework(self) -> Framework:
        return self.framework

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def _emit(self, handle: WorldObject, event: WorldEvent, payload: Any = None) -> None:
        for callback in list(self._listeners.get((id(handle), event), [])):
            callback(payload)

    def grab(self, obj: WorldObject) -> bool:
        if not obj.interaction_enabled:
            return False
        self._emit(obj, WorldEvent.GRABBED)
        return True

    def release(self, obj: WorldObject) -> None:
        self._emit(obj, WorldEvent.RELEASED)

    def snap(self, obj: WorldObject, socket: WorldObject) -> bool:
        if not socket.interaction_enabled or socket.occupant is not None:
            return False
        socket.occupant = obj
        obj.socket = socket
        if obj.fastener is not None:
            obj.fastener_state = FastenerState.LOCKED
            obj.fastener_substate = FastenerSubstate.LOOSE
            obj.rotation = 0.0
        self._emit(socket, WorldEvent.SNAPPED, obj)
        return True

    def unsnap(self, obj: WorldObject) -> bool:
        socket = obj.socket
        if socket is None or obj.fastener_substate is FastenerSubstate.TIGHT:
            return False
        socket.occupant = None
        obj.socket = None
        obj.fastener_state = FastenerState.UNLOCKED
        obj.fastener_substate = FastenerSubstate.NONE
        self._emit(socket, WorldEvent.UNSNAPPED, obj)
        if obj.fastener is not None:
            self._emit(obj, WorldEvent.REMOVED)
        return True

    def rotate_fastener(self, obj: WorldObject, degrees: float) -> FastenerSubstate:
        """Positive degrees tighten, negative degrees loosen."""
        if obj.fastener is None or obj.fastener_state is not FastenerState.LOCKED:
            return obj.fastener_substate
        cfg = obj.fastener
        obj.rotation += degrees
        if (
            obj.fastener_substate is FastenerSubstate.LOOSE
            and obj.rotation >= cfg.tighten_threshold - cfg.angle_tolerance
        ):
            obj.fastener_substate = FastenerSubstate.TIGHT
            obj.rotation = 0.0
            self._emit(obj, WorldEvent.TIGHTENED)
        elif (
            obj.fastener_substate is FastenerSubstate.TIGHT
            and -obj.rotation >= cfg.loosen_threshold - cfg.angle_tolerance
        ):
            obj.fastener_substate = FastenerSubstate.LOOSE
            obj.rotation = 0.0
            self._emit(obj, WorldEvent.LOOSENED)
        return obj.fastener_substate

    def turn_knob(self, obj: WorldObject, angle: float) -> None:
        obj.angle = angle
        self._emit(obj, WorldEvent.ANGLE_CHANGED, angle)

    def set_condition(self, obj: WorldObject, met: bool = True) -> None:
        obj.condition = met

    def press(self, obj: WorldObject) -> bool:
        if not obj.interaction_enabled:
            return False
        self._emit(obj, WorldEvent.BUTTON_PRESSED)
        return True
