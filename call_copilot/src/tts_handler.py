"""
Deepgram Text-to-Speech handler.
Renders reply text to telephony-ready (8kHz mu-law WAV) files for playback.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

from deepgram import AsyncDeepgramClient

from .config import DeepgramConfig

logger = logging.getLogger(__name__)


class SynthesisError(Exception):
    """Speech synthesis failed."""


def new_audio_filename() -> str:
    """Unique name for a generated audio file."""
    return f"{uuid.uuid4()}.wav"


class TTSHandler:
    """Synthesizes text to audio files Telnyx can play by URL."""

    def __init__(self, config: DeepgramConfig, audio_dir: str):
        """
        Initialize the TTS handler.

        Args:
            config: Deepgram configuration
            audio_dir: Directory generated files are written to (served at /audio)
        """
        self.config = config
        self.audio_dir = Path(audio_dir)
        self.client = AsyncDeepgramClient(api_key=config.api_key)

    def ensure_dir(self) -> None:
        self.audio_dir.mkdir(parents=True, exist_ok=True)

    async def synthesize_to_file(self, text: str, filename: Optional[str] = None) -> Path:
        """
        Synthesize ``text`` into ``audio_dir/filename``.

        Returns:
            Path of the written file

        Raises:
            SynthesisError: If Deepgram fails or returns no audio
        """
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        self.ensure_dir()
        path = self.audio_dir / (filename or new_audio_filename())

        chunks: list[bytes] = []
        try:
            async for chunk in self.client.speak.v1.audio.generate(
                text=text,
                model=self.config.tts_model,
                encoding=self.config.tts_encoding,
                sample_rate=self.config.sample_rate,
                container="wav",
            ):
                chunks.append(chunk)
        except Exception as e:
            logger.error(f"Deepgram TTS error: {e}")
            raise SynthesisError(str(e)) from e

        if not chunks:
            raise SynthesisError("Deepgram returned no audio")

        audio = b"".join(chunks)
        await asyncio.to_thread(path.write_bytes, audio)
        logger.info(f"TTS complete: {path} ({len(audio)} bytes)")
        return path
