"""
Call Copilot - operator-assisted AI phone calls.

Uses Telnyx for telephony, Deepgram for STT/TTS, and Amazon Bedrock for reply suggestions.
"""

from .src import (
    load_config,
    Config,
    CallManager,
    CallRegistry,
    CallSession,
    STTHandler,
    TTSHandler,
    LLMHandler,
    extract_replies,
)

__all__ = [
    "load_config",
    "Config",
    "CallManager",
    "CallRegistry",
    "CallSession",
    "STTHandler",
    "TTSHandler",
    "LLMHandler",
    "extract_replies",
]
