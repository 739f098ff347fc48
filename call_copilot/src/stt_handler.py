"""
Deepgram Speech-to-Text handler.
Streams linear PCM to Deepgram and reports final utterances.
"""

import asyncio
import logging
from typing import Callable, Optional, Awaitable
from dataclasses import dataclass, field

from deepgram import AsyncDeepgramClient
from deepgram.core.events import EventType
from deepgram.listen import (
    ListenV1Results,
    ListenV1UtteranceEnd,
)

from .config import DeepgramConfig

logger = logging.getLogger(__name__)


@dataclass
class STTState:
    """Tracks STT state for a session."""
    is_connected: bool = False
    is_closed: bool = False
    transcript_parts: list[str] = field(default_factory=list)


class STTHandler:
    """Handles Deepgram live transcription for one call."""

    def __init__(self, config: DeepgramConfig):
        """
        Initialize the STT handler.

        Args:
            config: Deepgram configuration
        """
        self.config = config
        self.client = AsyncDeepgramClient(api_key=config.api_key)
        self.connection = None
        self.state = STTState()
        self._context_manager = None

        # Callbacks
        self._on_final: Optional[Callable[[str], Awaitable[None]]] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._audio_count: int = 0

    def on_final(self, callback: Callable[[str], Awaitable[None]]) -> None:
        """Register callback for completed utterances."""
        self._on_final = callback

    async def connect(self) -> bool:
        """
        Establish connection to Deepgram STT.

        Returns:
            True if connection successful
        """
        if self.state.is_closed:
            logger.warning("STT handler already closed, not connecting")
            return False
        try:
            self._context_manager = self.client.listen.v1.connect(
                model=self.config.stt_model,
                language=self.config.language,
                encoding=self.config.encoding,
                sample_rate=str(self.config.sample_rate),
                channels="1",
                punctuate="true",
                interim_results="true",
                endpointing=str(self.config.endpointing_ms),
                utterance_end_ms=str(self.config.utterance_end_ms),
                smart_format="true",
            )

            self.connection = await self._context_manager.__aenter__()

            self.connection.on(EventType.OPEN, self._handle_open)
            self.connection.on(EventType.CLOSE, self._handle_close)
            self.connection.on(EventType.MESSAGE, self._handle_message)
            self.connection.on(EventType.ERROR, self._handle_error)

            # Runs until the socket closes
            self._listen_task = asyncio.create_task(self.connection.start_listening())

            self.state.is_connected = True
            logger.info("Connected to Deepgram STT")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to Deepgram STT: {e}")
            return False

    async def send_audio(self, audio_data: bytes) -> None:
        """
        Send audio data to Deepgram for transcription.

        Args:
            audio_data: Raw audio bytes (linear16 8kHz)
        """
        if not self.connection or not self.state.is_connected:
            return

        try:
            await self.connection.send_media(audio_data)

            self._audio_count += 1
            if self._audio_count == 1 or self._audio_count % 500 == 0:
                logger.info(f"Sent {self._audio_count} audio chunks to STT")

        except Exception as e:
            logger.error(f"Error sending audio to STT: {e}")
            self.state.is_connected = False

    async def close(self) -> None:
        """Close the STT connection. Safe to call more than once."""
        if self.state.is_closed:
            return
        self.state.is_closed = True

        if self.connection:
            try:
                await self.connection.send_close_stream()
            except Exception as e:
                logger.debug(f"Error sending close stream: {e}")

        if self._context_manager:
            try:
                await self._context_manager.__aexit__(None, None, None)
            except Exception as e:
                logger.debug(f"Error closing context manager: {e}")
            finally:
                self.state.is_connected = False
                self.connection = None
                self._context_manager = None

        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
        logger.info("Deepgram STT closed")

    def reset_transcript(self) -> None:
        """Reset the current transcript state."""
        self.state.transcript_parts.clear()

    def get_full_transcript(self) -> str:
        """Get the complete transcript from all parts."""
        return " ".join(self.state.transcript_parts).strip()

    def _handle_open(self, _) -> None:
        logger.debug("STT connection opened")

    def _handle_close(self, _) -> None:
        logger.debug("STT connection closed")
        self.state.is_connected = False

    def _handle_message(self, message) -> None:
        """Handle incoming messages from Deepgram."""
        asyncio.create_task(self._process_message(message))

    async def _process_message(self, message) -> None:
        """Process incoming messages asynchronously."""
        try:
            msg_type = getattr(message, "type", None)

            if msg_type == "Results" or isinstance(message, ListenV1Results):
                await self._handle_transcript(message)
            elif msg_type == "UtteranceEnd" or isinstance(message, ListenV1UtteranceEnd):
                await self._emit_final()
            else:
                logger.debug(f"STT: Ignoring message type: {msg_type}")

        except Exception as e:
            logger.error(f"Error processing message: {e}")

    async def _handle_transcript(self, result) -> None:
        """Handle incoming transcript."""
        channel = getattr(result, "channel", None)
        alternatives = getattr(channel, "alternatives", None) if channel else None
        if not alternatives:
            return

        alt = alternatives[0]
        transcript = getattr(alt, "transcript", "")
        if not transcript:
            # Empty transcript is common during silence
            return

        is_final = getattr(result, "is_final", False) or False
        speech_final = getattr(result, "speech_final", False) or False

        logger.debug(f"STT transcript: '{transcript}' (final={is_final}, speech_final={speech_final})")

        if is_final:
            self.state.transcript_parts.append(transcript)

        # Endpointing detected the end of the utterance
        if speech_final:
            await self._emit_final()

    async def _emit_final(self) -> None:
        full_transcript = self.get_full_transcript()
        self.reset_transcript()
        if full_transcript and self._on_final:
            await self._on_final(full_transcript)

    def _handle_error(self, error) -> None:
        logger.error(f"STT error: {error}")
