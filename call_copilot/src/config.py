"""
Configuration management for the call copilot.
Loads settings from environment variables with validation.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Load .env from call_copilot dir, project root, or current directory
_src_dir = Path(__file__).parent
_package_dir = _src_dir.parent
_project_root = _package_dir.parent
load_dotenv(_package_dir / '.env')
load_dotenv(_project_root / '.env')
load_dotenv()


def _get_required_env(key: str) -> str:
    """Get a required environment variable or raise an error."""
    value = os.getenv(key)
    if not value:
        raise ValueError(f"Missing required environment variable: {key}")
    return value


def _get_optional_env(key: str, default: str = "") -> str:
    """Get an optional environment variable with a default."""
    return os.getenv(key, default)


def _get_optional_int(key: str, default: int) -> int:
    """Get an optional integer environment variable with a default."""
    value = os.getenv(key)
    return int(value) if value else default


def _get_optional_float(key: str, default: float) -> float:
    """Get an optional float environment variable with a default."""
    value = os.getenv(key)
    return float(value) if value else default


@dataclass(frozen=True)
class TelnyxConfig:
    """Telnyx API configuration."""
    api_key: str
    connection_id: str
    phone_number: str


@dataclass(frozen=True)
class DeepgramConfig:
    """Deepgram API configuration."""
    api_key: str
    stt_model: str
    tts_model: str
    language: str = "ko"
    sample_rate: int = 8000
    encoding: str = "linear16"
    tts_encoding: str = "mulaw"
    endpointing_ms: int = 300
    utterance_end_ms: int = 1000


@dataclass(frozen=True)
class BedrockConfig:
    """AWS Bedrock configuration."""
    api_key: str
    region: str
    model_id: str
    max_tokens: int = 200
    temperature: float = 0.7
    timeout: int = 30


@dataclass(frozen=True)
class ServerConfig:
    """HTTP/WebSocket server configuration."""
    host: str
    port: int
    public_host: str
    audio_dir: str = "audio"

    @property
    def public_ws_base(self) -> str:
        """WebSocket base URL derived from the public https/http host."""
        if self.public_host.startswith("https"):
            return "wss" + self.public_host[len("https"):]
        if self.public_host.startswith("http"):
            return "ws" + self.public_host[len("http"):]
        return self.public_host

    def media_stream_url(self, call_id: str) -> str:
        """Media stream URL carrying the call identifier as a query parameter."""
        return f"{self.public_ws_base}/media?call_control_id={call_id}"

    def audio_url(self, filename: str) -> str:
        """Public URL of a generated audio file."""
        return f"{self.public_host}/audio/{filename}"


@dataclass(frozen=True)
class SessionConfig:
    """Per-call session tuning.

    The dedup window and length cutoff are heuristics for recognition noise,
    not hard limits.
    """
    dedup_window_ms: int = 2500
    dedup_min_length: int = 3
    history_limit: int = 20
    max_candidates: int = 3
    audio_buffer_chunks: int = 500


@dataclass(frozen=True)
class Config:
    """Main configuration container."""
    telnyx: TelnyxConfig
    deepgram: DeepgramConfig
    bedrock: BedrockConfig
    server: ServerConfig
    session: SessionConfig


def load_config() -> Config:
    """Load and validate all configuration from environment variables."""
    return Config(
        telnyx=TelnyxConfig(
            api_key=_get_required_env("TELNYX_API_KEY"),
            connection_id=_get_required_env("TELNYX_CONNECTION_ID"),
            phone_number=_get_required_env("TELNYX_PHONE_NUMBER"),
        ),
        deepgram=DeepgramConfig(
            api_key=_get_required_env("DEEPGRAM_API_KEY"),
            stt_model=_get_optional_env("DEEPGRAM_STT_MODEL", "nova-2"),
            tts_model=_get_required_env("DEEPGRAM_TTS_MODEL"),
            language=_get_optional_env("DEEPGRAM_LANGUAGE", "ko"),
            endpointing_ms=_get_optional_int("DEEPGRAM_ENDPOINTING_MS", 300),
            utterance_end_ms=_get_optional_int("DEEPGRAM_UTTERANCE_END_MS", 1000),
        ),
        bedrock=BedrockConfig(
            api_key=_get_required_env("BEDROCK_API_KEY"),
            region=_get_optional_env("AWS_REGION", "us-east-1"),
            model_id=_get_optional_env("BEDROCK_MODEL_ID", "us.amazon.nova-pro-v1:0"),
            max_tokens=_get_optional_int("BEDROCK_MAX_TOKENS", 200),
            temperature=_get_optional_float("BEDROCK_TEMPERATURE", 0.7),
        ),
        server=ServerConfig(
            host=_get_optional_env("SERVER_HOST", "0.0.0.0"),
            port=_get_optional_int("SERVER_PORT", 3003),
            public_host=_get_required_env("PUBLIC_HOST").rstrip("/"),
            audio_dir=_get_optional_env("AUDIO_DIR", str(_project_root / "audio")),
        ),
        session=SessionConfig(
            dedup_window_ms=_get_optional_int("DEDUP_WINDOW_MS", 2500),
            dedup_min_length=_get_optional_int("DEDUP_MIN_LENGTH", 3),
            history_limit=_get_optional_int("HISTORY_LIMIT", 20),
            max_candidates=_get_optional_int("MAX_CANDIDATES", 3),
        ),
    )
