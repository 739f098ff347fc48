"""
Audio format conversion utilities.
Handles conversion from Telnyx mu-law frames to the linear PCM Deepgram listens to.
"""

import asyncio
import base64
import logging
import struct
from typing import Optional

logger = logging.getLogger(__name__)

MULAW_BIAS = 0x84


def decode_mulaw_sample(value: int) -> int:
    """Expand one 8-bit mu-law sample to a signed 16-bit value."""
    mu = ~value & 0xFF
    exponent = (mu >> 4) & 0x07
    mantissa = mu & 0x0F
    sample = ((mantissa << 3) + MULAW_BIAS) << exponent
    return -sample if mu & 0x80 else sample


def decode_mulaw(data: bytes) -> bytes:
    """
    Decode mu-law encoded audio to 16-bit little-endian linear PCM.

    Every input byte yields exactly one output sample, in order.
    """
    samples = [decode_mulaw_sample(b) for b in data]
    return struct.pack(f"<{len(samples)}h", *samples)


def base64_decode(data: str) -> bytes:
    """Decode base64 encoded audio data."""
    return base64.b64decode(data, validate=True)


def base64_encode(data: bytes) -> str:
    """Encode audio data to base64."""
    return base64.b64encode(data).decode("utf-8")


class PcmPushStream:
    """
    Bounded in-memory stream of PCM chunks between the media socket and STT.

    Writes never block; the recognizer side consumes it with ``async for``.
    Closing discards anything still pending and ends iteration.
    """

    def __init__(self, max_chunks: int = 500):
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=max_chunks + 1)
        self._max_chunks = max_chunks
        self.closed = False
        self.written = 0
        self.dropped = 0

    def write(self, pcm: bytes) -> bool:
        """Queue a chunk. Returns False if it was dropped."""
        if self.closed:
            return False
        if self._queue.qsize() >= self._max_chunks:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"PCM stream full, dropped {self.dropped} chunks")
            return False
        self._queue.put_nowait(pcm)
        self.written += 1
        return True

    def close(self) -> None:
        """Stop accepting audio and wake the reader."""
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def pending(self) -> int:
        return 0 if self.closed else self._queue.qsize()

    def __aiter__(self) -> "PcmPushStream":
        return self

    async def __anext__(self) -> bytes:
        chunk = await self._queue.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk
