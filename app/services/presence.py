import logging
import threading
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Process-wide map of online identity -> live connection handle.

    One connection per identity: the most recent ``connect`` wins. Nothing
    is persisted; a restart starts everyone offline.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: Dict[Any, Any] = {}

    def connect(self, identity, handle) -> Optional[Any]:
        """Record ``handle`` for ``identity``; returns the handle it replaced, if any."""
        with self._lock:
            previous = self._handles.get(identity)
            self._handles[identity] = handle
        if previous is not None and previous is not handle:
            logger.info(f"Identity {identity} reconnected, replacing previous connection")
        return previous

    def disconnect(self, identity) -> Optional[Any]:
        with self._lock:
            return self._handles.pop(identity, None)

    def handle_for(self, identity) -> Optional[Any]:
        with self._lock:
            return self._handles.get(identity)

    def is_online(self, identity) -> bool:
        with self._lock:
            return identity in self._handles

    def list_online(self) -> Set[Any]:
        with self._lock:
            return set(self._handles)

    def clear(self):
        with self._lock:
            self._handles.clear()


presence_tracker = PresenceTracker()
