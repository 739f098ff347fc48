"""
Per-call media session.

One CallSession exists per telephony media socket. It binds the socket to a
call_control_id, feeds decoded audio to the recognizer, and runs recognized
utterances through the dedup gate, the conversation history, the LLM and the
reply extractor, one utterance at a time.
"""

import asyncio
import binascii
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

from .audio_utils import PcmPushStream, base64_decode, decode_mulaw
from .call_registry import CallRegistry
from .config import SessionConfig
from .conversation import ConversationHistory, Role
from .llm_handler import LLMError
from .recognition_gate import RecognitionGate
from .reply_extractor import extract_replies

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    BOUND = "bound"
    ACTIVE = "active"
    STOPPING = "stopping"
    CLOSED = "closed"


class CallSession:
    """
    State machine for one media stream:
    CONNECTING -> BOUND -> ACTIVE -> STOPPING -> CLOSED.

    Recognizer callbacks only enqueue text; a single worker task owns the gate
    and the history. ``close`` is the only teardown path and is idempotent.
    """

    def __init__(
        self,
        stream_handle: Any,
        registry: CallRegistry,
        recognizer: Any,
        llm: Any,
        notifier: Any,
        config: SessionConfig,
        call_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stream_handle = stream_handle
        self.registry = registry
        self.recognizer = recognizer
        self.llm = llm
        self.notifier = notifier
        self.config = config
        self.call_id: Optional[str] = None
        self.state = SessionState.CONNECTING
        self.close_reason: Optional[str] = None

        self.gate = RecognitionGate(
            window_ms=config.dedup_window_ms,
            min_length=config.dedup_min_length,
            clock=clock,
        )
        self.history = ConversationHistory(limit=config.history_limit)
        self.audio_input = PcmPushStream(max_chunks=config.audio_buffer_chunks)

        self._initial_call_id = call_id
        self._finals: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._recognition_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._teardown_tasks: list[asyncio.Task] = []

        self.frames_received = 0
        self.frames_dropped = 0

        recognizer.on_final(self._on_recognized)

    @property
    def label(self) -> str:
        return self.call_id or "(pending)"

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.STOPPING, SessionState.CLOSED)

    def start(self) -> None:
        """Start the utterance worker and bind the call id if it is already known."""
        self._worker_task = asyncio.create_task(self._run_worker())
        if self._initial_call_id:
            self.bind(self._initial_call_id)
        else:
            logger.info("Media stream connected (awaiting start)")

    # Binding

    def bind(self, call_id: Optional[str]) -> bool:
        """
        Claim ``call_id`` for this stream, evicting any stream that held it.

        Recognition starts on the first successful bind.
        """
        if not call_id:
            return False
        if self.is_closed:
            logger.debug(f"Ignoring bind to {call_id} on closed session")
            return False

        evicted = self.registry.bind(self, call_id)
        if evicted is not None:
            evicted.close(reason="superseded", close_stream=True)

        if self.state is SessionState.CONNECTING:
            self.state = SessionState.BOUND
            logger.info(f"Media stream bound to call {call_id}")
            self._recognition_task = asyncio.create_task(self._start_recognition())
        return True

    async def _start_recognition(self) -> None:
        try:
            ok = await self.recognizer.connect()
        except Exception as e:
            logger.error(f"[{self.label}] Recognition start error: {e}")
            ok = False

        if not ok:
            logger.error(f"[{self.label}] Recognition failed to start")
            return
        if self.state is not SessionState.BOUND:
            # Closed while connecting; teardown releases the recognizer
            return

        self.state = SessionState.ACTIVE
        self._pump_task = asyncio.create_task(self._pump_audio())
        logger.info(f"[{self.label}] Recognition started")

    async def _pump_audio(self) -> None:
        async for chunk in self.audio_input:
            await self.recognizer.send_audio(chunk)

    # Inbound transport frames

    def handle_frame(self, raw: str) -> None:
        """Apply one media-socket message. Malformed frames are dropped."""
        if self.is_closed:
            return

        try:
            message = json.loads(raw)
        except ValueError as e:
            self._drop_frame(f"unparseable frame: {e}")
            return
        if not isinstance(message, dict):
            self._drop_frame("frame is not an object")
            return

        event = message.get("event")

        if event == "connected":
            logger.debug("Media stream transport connected")

        elif event == "start":
            start = message.get("start") or {}
            call_id = start.get("call_control_id") or message.get("call_control_id")
            logger.info(f"Media stream started: {call_id or self.label}")
            self.bind(call_id)

        elif event == "media":
            self._handle_media(message.get("media") or {})

        elif event == "stop":
            logger.info(f"Media stream stopped: {self.label}")
            self.stop()

        elif event == "mark":
            logger.debug(f"Mark event: {message.get('mark')}")

        else:
            logger.debug(f"Ignoring media stream event: {event}")

    def _handle_media(self, media: dict) -> None:
        if media.get("track", "inbound") != "inbound":
            return
        payload = media.get("payload")
        if not payload:
            return

        try:
            mulaw = base64_decode(payload)
        except (binascii.Error, ValueError, TypeError) as e:
            self._drop_frame(f"bad media payload: {e}")
            return

        self.frames_received += 1
        self.audio_input.write(decode_mulaw(mulaw))

    def _drop_frame(self, reason: str) -> None:
        self.frames_dropped += 1
        logger.warning(f"[{self.label}] Dropped media frame: {reason}")

    # Recognized utterances

    async def _on_recognized(self, text: str) -> None:
        if self.is_closed:
            logger.debug(f"[{self.label}] Ignoring recognition after close: {text}")
            return
        self._finals.put_nowait(text)

    async def _run_worker(self) -> None:
        while True:
            text = await self._finals.get()
            if text is None or self.is_closed:
                break
            try:
                await self.process_final(text)
            except Exception as e:
                logger.error(f"[{self.label}] Error handling recognition: {e}", exc_info=True)

    async def process_final(self, text: str) -> Optional[list[str]]:
        """
        Run one final recognition result through the reply pipeline.

        Returns:
            The published candidates, or None if nothing was published
        """
        text = text.strip()
        if not text:
            return None
        if not self.gate.accept(text):
            logger.debug(f"[{self.label}] Dropped duplicate recognition: {text}")
            return None

        logger.info(f"[{self.label}] Final recognition: {text}")
        self.history.append(Role.CALLER, text)
        await self.notifier.publish("stt.final", {"text": text, "callSid": self.call_id})

        try:
            completion = await self.llm.suggest_replies(self.history, text)
        except LLMError as e:
            logger.error(f"[{self.label}] LLM error: {e}")
            if not self.is_closed:
                await self.notifier.publish(
                    "recommendations.error",
                    {"callSid": self.call_id, "message": str(e)},
                )
            return None

        if self.is_closed:
            logger.info(f"[{self.label}] Session closed, discarding completion")
            return None

        replies = extract_replies(completion, limit=self.config.max_candidates)
        if not replies:
            logger.warning(f"[{self.label}] No usable replies in completion: {completion[:100]!r}")
            await self.notifier.publish(
                "recommendations.error",
                {"callSid": self.call_id, "message": "empty completion"},
            )
            return None

        await self.notifier.publish("recommendations", {"callSid": self.call_id, "replies": replies})
        self.history.append(Role.ASSISTANT, " / ".join(replies))
        return replies

    # Teardown

    def stop(self) -> bool:
        """Explicit stop from the transport."""
        return self.close(reason="stop")

    def close(self, reason: str = "closed", close_stream: bool = False) -> bool:
        """
        Tear the session down. Only the first call has any effect.

        Audio ingestion stops and the registry entry is released before this
        returns; recognizer shutdown runs in the background.

        Returns:
            True if this call performed the teardown
        """
        if self.is_closed:
            return False

        self.state = SessionState.STOPPING
        self.close_reason = reason
        logger.info(f"Closing session {self.label} ({reason})")

        self.audio_input.close()
        self.registry.release(self)
        self._finals.put_nowait(None)

        self._teardown_tasks.append(asyncio.create_task(self._release_recognizer()))
        if close_stream and self.stream_handle is not None:
            self._teardown_tasks.append(asyncio.create_task(self._close_stream()))

        self.state = SessionState.CLOSED
        return True

    async def _release_recognizer(self) -> None:
        if self._recognition_task is not None and not self._recognition_task.done():
            await asyncio.gather(self._recognition_task, return_exceptions=True)
        try:
            await self.recognizer.close()
        except Exception as e:
            logger.error(f"[{self.label}] Error stopping recognition: {e}")

    async def _close_stream(self) -> None:
        try:
            await self.stream_handle.close()
        except Exception as e:
            logger.debug(f"[{self.label}] Error closing media socket: {e}")

    async def wait_closed(self) -> None:
        """Wait for background teardown and the worker to finish."""
        tasks = list(self._teardown_tasks)
        for task in (self._worker_task, self._pump_task):
            if task is not None:
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
