"""
Shared test configuration, fakes and fixtures.
No test here talks to Telnyx, Deepgram or Bedrock.
"""

import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Optional

import certifi
import pytest

# Add project root to path for imports
_tests_dir = os.path.dirname(os.path.abspath(__file__))
_package_dir = os.path.dirname(_tests_dir)
_project_root = os.path.dirname(_package_dir)
sys.path.insert(0, _project_root)

os.environ['SSL_CERT_FILE'] = certifi.where()

from call_copilot.src.call_manager import CallState
from call_copilot.src.call_registry import CallRegistry
from call_copilot.src.config import (
    BedrockConfig,
    Config,
    DeepgramConfig,
    ServerConfig,
    SessionConfig,
    TelnyxConfig,
)
from call_copilot.src.session import CallSession


class FakeRecognizer:
    """Stands in for STTHandler: records audio and lifecycle calls."""

    def __init__(self, connect_ok: bool = True):
        self.connect_ok = connect_ok
        self.connect_calls = 0
        self.close_calls = 0
        self.audio: list[bytes] = []
        self._on_final = None

    def on_final(self, callback) -> None:
        self._on_final = callback

    async def connect(self) -> bool:
        self.connect_calls += 1
        return self.connect_ok

    async def send_audio(self, audio_data: bytes) -> None:
        self.audio.append(audio_data)

    async def close(self) -> None:
        self.close_calls += 1

    async def emit_final(self, text: str) -> None:
        await self._on_final(text)


class FakeLLM:
    """Returns canned completions; can block until released or raise."""

    def __init__(self, responses: Optional[list[str]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.error = error
        self.release: Optional[asyncio.Event] = None
        self.calls: list[tuple[list, str]] = []

    async def suggest_replies(self, history, utterance: str) -> str:
        self.calls.append((history.turns(), utterance))
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return '["네, 감사합니다."]'


class RecordingNotifier:
    """Operator hub replacement that records published events."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def publish(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]

    def of(self, name: str) -> list[dict]:
        return [data for event, data in self.events if event == name]


class FakeWebSocket:
    def __init__(self):
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def close(self, code: int = 1000) -> None:
        self.close_calls += 1


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


class FakeTTS:
    def __init__(self, audio_dir: Path):
        self.audio_dir = audio_dir
        self.texts: list[str] = []
        self.error: Optional[Exception] = None

    async def synthesize_to_file(self, text: str, filename: Optional[str] = None) -> Path:
        if self.error is not None:
            raise self.error
        self.texts.append(text)
        path = self.audio_dir / (filename or f"tts-{len(self.texts)}.wav")
        path.write_bytes(b"RIFF")
        return path


class FakeCallManager:
    """Records Telnyx actions instead of performing them."""

    def __init__(self):
        self.active_calls: dict[str, CallState] = {}
        self.actions: list[tuple] = []
        self.error: Optional[Exception] = None

    async def initiate_call(self, to_number, announcement_url=None, from_number=None) -> CallState:
        if self.error is not None:
            raise self.error
        state = CallState(
            call_control_id=f"v3:call-{len(self.active_calls) + 1}",
            call_leg_id="leg",
            to_number=to_number,
            from_number=from_number or "+15550000000",
            announcement_url=announcement_url,
        )
        self.active_calls[state.call_control_id] = state
        self.actions.append(("dial", to_number, announcement_url))
        return state

    async def start_media_streaming(self, call_control_id: str) -> None:
        self.actions.append(("stream", call_control_id))

    async def play_audio(self, call_control_id: str, audio_url: str) -> None:
        self.actions.append(("play", call_control_id, audio_url))

    async def play_to_call(self, call_control_id: str, audio_url: str) -> None:
        if self.error is not None:
            raise self.error
        self.actions.append(("play_to_call", call_control_id, audio_url))

    async def hangup(self, call_control_id: str) -> None:
        self.active_calls.pop(call_control_id, None)
        if self.error is not None:
            raise self.error
        self.actions.append(("hangup", call_control_id))

    def handle_webhook_event(self, event_type: str, payload: dict) -> Optional[str]:
        call_control_id = payload.get("call_control_id")
        if event_type in ("call.answered", "call.hangup", "streaming.started", "streaming.stopped"):
            return call_control_id
        return None


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig()


@pytest.fixture
def registry() -> CallRegistry:
    return CallRegistry()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_session(registry, notifier, llm, session_config, clock):
    """Factory for sessions wired to fakes."""

    def _make(call_id: Optional[str] = None, recognizer: Optional[FakeRecognizer] = None) -> CallSession:
        return CallSession(
            stream_handle=FakeWebSocket(),
            registry=registry,
            recognizer=recognizer or FakeRecognizer(),
            llm=llm,
            notifier=notifier,
            config=session_config,
            call_id=call_id,
            clock=clock,
        )

    return _make


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        telnyx=TelnyxConfig(api_key="test", connection_id="conn", phone_number="+15550000000"),
        deepgram=DeepgramConfig(api_key="test", stt_model="nova-2", tts_model="aura-2-thalia-en"),
        bedrock=BedrockConfig(api_key="test", region="us-east-1", model_id="test-model"),
        server=ServerConfig(
            host="127.0.0.1",
            port=3003,
            public_host="https://copilot.example.com",
            audio_dir=str(tmp_path / "audio"),
        ),
        session=SessionConfig(),
    )
