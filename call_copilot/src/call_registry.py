"""
Process-wide map from call identifier to the session streaming that call.

The media stream may connect before its call_control_id is known, and Telnyx
may open a new stream for a call whose old stream has not closed yet. All
ownership changes go through ``bind``/``release`` under one lock.
"""

import logging
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .session import CallSession

logger = logging.getLogger(__name__)


class CallRegistry:
    """Lock-guarded call_id -> CallSession table."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, "CallSession"] = {}

    def bind(self, session: "CallSession", call_id: Optional[str]) -> Optional["CallSession"]:
        """
        Make ``session`` the owner of ``call_id``.

        Args:
            session: Session to install
            call_id: Authoritative call identifier

        Returns:
            The previous owner, evicted from the table, or None. The caller is
            responsible for closing it.
        """
        if not call_id:
            return None

        with self._lock:
            current = self._sessions.get(call_id)
            if current is session and session.call_id == call_id:
                return None

            evicted = None
            if current is not None and current is not session:
                evicted = self._sessions.pop(call_id)

            previous_id = session.call_id
            if previous_id and previous_id != call_id and self._sessions.get(previous_id) is session:
                del self._sessions[previous_id]
                logger.info(f"Moved session from {previous_id} to {call_id}")

            self._sessions[call_id] = session
            session.call_id = call_id

        if evicted is not None:
            logger.warning(f"Call {call_id} rebound to a new stream, evicting the previous one")
        return evicted

    def release(self, session: "CallSession") -> bool:
        """Remove ``session``'s entry if it still owns it."""
        call_id = session.call_id
        if not call_id:
            return False
        with self._lock:
            if self._sessions.get(call_id) is session:
                del self._sessions[call_id]
                return True
        return False

    def get(self, call_id: str) -> Optional["CallSession"]:
        with self._lock:
            return self._sessions.get(call_id)

    def snapshot(self) -> dict[str, "CallSession"]:
        """Consistent copy of the current table."""
        with self._lock:
            return dict(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._sessions
