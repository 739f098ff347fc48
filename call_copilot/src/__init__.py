"""
Call Copilot source modules.
"""

from .config import load_config, Config, TelnyxConfig, DeepgramConfig, BedrockConfig, ServerConfig, SessionConfig
from .call_manager import CallManager, CallState
from .call_registry import CallRegistry
from .conversation import ConversationHistory, Role, Turn, build_prompt
from .recognition_gate import RecognitionGate
from .reply_extractor import extract_replies, default_suggestions
from .session import CallSession, SessionState
from .stt_handler import STTHandler, STTState
from .tts_handler import TTSHandler, SynthesisError
from .llm_handler import LLMHandler, LLMError
from .operator_hub import OperatorHub
from .audio_utils import base64_decode, base64_encode, decode_mulaw, PcmPushStream
from .websocket_server import app, init_session_manager, SessionManager

__all__ = [
    # Config
    "load_config",
    "Config",
    "TelnyxConfig",
    "DeepgramConfig",
    "BedrockConfig",
    "ServerConfig",
    "SessionConfig",
    # Session core
    "CallRegistry",
    "CallSession",
    "SessionState",
    "ConversationHistory",
    "Role",
    "Turn",
    "build_prompt",
    "RecognitionGate",
    "extract_replies",
    "default_suggestions",
    # Providers
    "CallManager",
    "CallState",
    "STTHandler",
    "STTState",
    "TTSHandler",
    "SynthesisError",
    "LLMHandler",
    "LLMError",
    "OperatorHub",
    # Utils
    "base64_decode",
    "base64_encode",
    "decode_mulaw",
    "PcmPushStream",
    # Server
    "app",
    "init_session_manager",
    "SessionManager",
]
