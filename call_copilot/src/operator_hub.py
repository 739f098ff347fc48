"""
Operator-facing event hub.
Tracks connected operator sockets, the call each one follows, and broadcasts.
"""

import asyncio
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class OperatorHub:
    """Broadcasts ``{"event", "data"}`` messages to operator WebSockets."""

    def __init__(self):
        self._operators: dict[Any, Optional[str]] = {}

    def connect(self, websocket) -> None:
        self._operators[websocket] = None
        logger.info(f"Operator connected ({len(self._operators)} total)")

    def disconnect(self, websocket) -> None:
        if websocket in self._operators:
            del self._operators[websocket]
            logger.info(f"Operator disconnected ({len(self._operators)} remaining)")

    def bind_call(self, websocket, call_id: Optional[str]) -> None:
        """Associate an operator connection with the call it placed."""
        if websocket in self._operators:
            self._operators[websocket] = call_id or None
            logger.info(f"Operator bound to call {call_id}")

    def release_call(self, call_id: str) -> None:
        """Unbind every operator following ``call_id``."""
        for websocket, bound in self._operators.items():
            if bound == call_id:
                self._operators[websocket] = None

    def active_call_id(self) -> Optional[str]:
        """Call followed by the first operator bound to one, if any."""
        for call_id in self._operators.values():
            if call_id:
                return call_id
        return None

    def __len__(self) -> int:
        return len(self._operators)

    async def send(self, websocket, event: str, data: dict) -> None:
        """Send one event to a single operator."""
        await websocket.send_json({"event": event, "data": data})

    async def publish(self, event: str, data: dict) -> None:
        """Send an event to every connected operator, dropping dead sockets."""
        if not self._operators:
            logger.debug(f"No operators connected, dropping {event}")
            return

        targets = list(self._operators)
        results = await asyncio.gather(
            *(self.send(ws, event, data) for ws in targets),
            return_exceptions=True,
        )
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Dropping operator socket after send error: {result}")
                self._operators.pop(ws, None)
