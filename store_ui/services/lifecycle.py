"""Process lifecycle states shared by the bootstrapper and the HTTP routes."""
from __future__ import annotations

import enum
import logging
import threading

from store_ui.metrics.prometheus import LIFECYCLE_STATE

log = logging.getLogger("store-ui.lifecycle")


class State(str, enum.Enum):
    """Bootstrapper state machine."""

    INITIALIZING = "Initializing"
    REGISTERING = "Registering"
    SERVING = "Serving"
    DRAINING = "Draining"
    STOPPED = "Stopped"


_ORDER = list(State)


class Lifecycle:
    """Current state; transitions only move forward."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = State.INITIALIZING
        LIFECYCLE_STATE.set(0)

    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    @property
    def ready(self) -> bool:
        return self.state is State.SERVING

    def advance(self, new: State) -> None:
        with self._lock:
            old = self._state
            if _ORDER.index(new) < _ORDER.index(old):
                raise ValueError(f"illegal transition {old.value} -> {new.value}")
            self._state = new
        LIFECYCLE_STATE.set(_ORDER.index(new))
        if new is not old:
            log.info("State %s -> %s", old.value, new.value)
