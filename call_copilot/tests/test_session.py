"""
Tests for the per-call session lifecycle and reply pipeline.
"""

import asyncio
import base64
import json

from call_copilot.src.audio_utils import decode_mulaw
from call_copilot.src.conversation import Role
from call_copilot.src.llm_handler import LLMError
from call_copilot.src.session import SessionState

from .conftest import FakeRecognizer, wait_until


def start_frame(call_id: str) -> str:
    return json.dumps({
        "event": "start",
        "stream_id": "stream-1",
        "start": {"call_control_id": call_id, "media_format": {"encoding": "PCMU"}},
    })


def media_frame(data: bytes, track: str = "inbound") -> str:
    return json.dumps({
        "event": "media",
        "media": {"track": track, "payload": base64.b64encode(data).decode("utf-8")},
    })


STOP_FRAME = json.dumps({"event": "stop"})


async def active_session(make_session, call_id="call-1", recognizer=None):
    session = make_session(call_id=call_id, recognizer=recognizer)
    session.start()
    await wait_until(lambda: session.state is SessionState.ACTIVE)
    return session


async def test_stream_waits_for_start_event_before_binding(make_session, registry):
    recognizer = FakeRecognizer()
    session = make_session(recognizer=recognizer)
    session.start()

    assert session.state is SessionState.CONNECTING
    assert session.call_id is None
    assert len(registry) == 0

    session.handle_frame(json.dumps({"event": "connected"}))
    session.handle_frame(start_frame("call-7"))

    assert session.state is SessionState.BOUND
    assert registry.get("call-7") is session
    await wait_until(lambda: session.state is SessionState.ACTIVE)
    assert recognizer.connect_calls == 1

    session.close()
    await session.wait_closed()


async def test_known_call_id_binds_on_connect(make_session, registry):
    session = await active_session(make_session, call_id="call-1")

    assert registry.get("call-1") is session
    # A start frame repeating the same id changes nothing
    session.handle_frame(start_frame("call-1"))
    assert registry.snapshot() == {"call-1": session}
    assert session.recognizer.connect_calls == 1

    session.close()
    await session.wait_closed()


async def test_inbound_media_is_decoded_and_forwarded(make_session):
    session = await active_session(make_session)

    session.handle_frame(media_frame(b"\xff\x7f"))
    session.handle_frame(media_frame(b"\x00", track="outbound"))
    await wait_until(lambda: len(session.recognizer.audio) == 1)

    assert session.recognizer.audio == [decode_mulaw(b"\xff\x7f")]
    assert session.frames_received == 1

    session.close()
    await session.wait_closed()


async def test_audio_before_recognition_is_buffered(make_session):
    recognizer = FakeRecognizer()
    session = make_session(recognizer=recognizer)
    session.start()

    session.handle_frame(media_frame(b"\xff"))
    session.handle_frame(start_frame("call-2"))
    await wait_until(lambda: len(recognizer.audio) == 1)

    assert recognizer.audio == [decode_mulaw(b"\xff")]
    session.close()
    await session.wait_closed()


async def test_malformed_frames_are_dropped(make_session):
    session = await active_session(make_session)

    session.handle_frame("not json")
    session.handle_frame("[1, 2]")
    session.handle_frame(json.dumps({"event": "media", "media": {"payload": "%%%"}}))
    session.handle_frame(json.dumps({"event": "mystery"}))

    assert session.frames_dropped == 3
    assert session.state is SessionState.ACTIVE

    session.handle_frame(media_frame(b"\xff"))
    await wait_until(lambda: len(session.recognizer.audio) == 1)

    session.close()
    await session.wait_closed()


async def test_stop_then_transport_close_releases_once(make_session, registry):
    session = await active_session(make_session)

    session.handle_frame(STOP_FRAME)
    assert session.state is SessionState.CLOSED
    assert session.audio_input.closed
    assert len(registry) == 0

    assert session.close(reason="transport closed") is False
    await session.wait_closed()

    assert session.recognizer.close_calls == 1
    assert session.close_reason == "stop"
    assert not session.stream_handle.closed

    # Frames after close are ignored
    session.handle_frame(media_frame(b"\xff"))
    assert session.frames_received == 0


async def test_close_before_bind(make_session):
    session = make_session()
    session.start()

    assert session.close(reason="transport closed")
    await session.wait_closed()

    assert session.state is SessionState.CLOSED
    assert session.recognizer.connect_calls == 0
    assert session.recognizer.close_calls == 1
    assert not session.bind("late")


async def test_recognizer_start_failure_still_tears_down(make_session):
    recognizer = FakeRecognizer(connect_ok=False)
    session = make_session(call_id="call-1", recognizer=recognizer)
    session.start()
    await wait_until(lambda: recognizer.connect_calls == 1)
    await asyncio.sleep(0)

    assert session.state is SessionState.BOUND

    session.close()
    await session.wait_closed()
    assert recognizer.close_calls == 1


async def test_rebind_collision_evicts_previous_stream(make_session, registry):
    first = await active_session(make_session, call_id="X")
    second = make_session()
    second.start()
    second.handle_frame(start_frame("X"))

    assert first.state is SessionState.CLOSED
    assert first.close_reason == "superseded"
    assert registry.get("X") is second

    await first.wait_closed()
    assert first.stream_handle.close_calls == 1
    assert first.recognizer.close_calls == 1

    # The evicted session's own teardown leaves the new owner in place
    first.close(reason="transport closed")
    assert registry.get("X") is second

    second.close()
    await second.wait_closed()


async def test_final_result_publishes_transcript_then_candidates(make_session, notifier, llm):
    llm.responses = ['```json\n["네, 두 명입니다.", "7시 가능할까요?", "네, 감사합니다.", "다른 날은요?"]\n```']
    session = await active_session(make_session)

    await session.recognizer.emit_final("  몇 분이세요?  ")
    await wait_until(lambda: "recommendations" in notifier.names())

    assert notifier.names() == ["stt.final", "recommendations"]
    assert notifier.of("stt.final") == [{"text": "몇 분이세요?", "callSid": "call-1"}]
    assert notifier.of("recommendations") == [{
        "callSid": "call-1",
        "replies": ["네, 두 명입니다.", "7시 가능할까요?", "네, 감사합니다."],
    }]

    turns = session.history.turns()
    assert [t.role for t in turns] == [Role.CALLER, Role.ASSISTANT]
    assert turns[1].content == "네, 두 명입니다. / 7시 가능할까요? / 네, 감사합니다."
    # The prompt saw the caller turn already appended
    assert llm.calls[0][1] == "몇 분이세요?"
    assert llm.calls[0][0][-1].content == "몇 분이세요?"

    session.close()
    await session.wait_closed()


async def test_duplicate_and_blank_finals_are_ignored(make_session, notifier, llm, clock):
    session = await active_session(make_session)

    await session.recognizer.emit_final("예약 가능할까요")
    await session.recognizer.emit_final("   ")
    clock.advance_ms(1000)
    await session.recognizer.emit_final("예약 가능할까요")
    clock.advance_ms(100)
    await session.recognizer.emit_final("네")
    await wait_until(lambda: "recommendations" in notifier.names())
    await asyncio.sleep(0.02)

    assert notifier.of("stt.final") == [{"text": "예약 가능할까요", "callSid": "call-1"}]
    assert len(llm.calls) == 1

    session.close()
    await session.wait_closed()


async def test_finals_are_processed_serially_in_order(make_session, notifier, llm):
    llm.responses = ['["first reply"]', '["second reply"]']
    llm.release = asyncio.Event()
    session = await active_session(make_session)

    await session.recognizer.emit_final("첫 번째 질문입니다")
    await session.recognizer.emit_final("두 번째 질문입니다")
    await wait_until(lambda: len(llm.calls) == 1)
    await asyncio.sleep(0.02)

    # Second utterance waits in the queue while the first is in flight
    assert len(llm.calls) == 1
    assert notifier.names() == ["stt.final"]

    llm.release.set()
    await wait_until(lambda: notifier.names().count("recommendations") == 2)

    assert notifier.names() == ["stt.final", "recommendations", "stt.final", "recommendations"]
    assert [e["replies"] for e in notifier.of("recommendations")] == [["first reply"], ["second reply"]]
    assert [t.content for t in session.history.turns()] == [
        "첫 번째 질문입니다", "first reply", "두 번째 질문입니다", "second reply",
    ]

    session.close()
    await session.wait_closed()


async def test_llm_error_is_reported_and_session_continues(make_session, notifier, llm):
    llm.error = LLMError("Bedrock returned HTTP 503")
    session = await active_session(make_session)

    await session.recognizer.emit_final("예약 가능할까요")
    await wait_until(lambda: "recommendations.error" in notifier.names())

    assert notifier.of("recommendations.error") == [
        {"callSid": "call-1", "message": "Bedrock returned HTTP 503"},
    ]
    assert session.state is SessionState.ACTIVE

    llm.error = None
    llm.responses = ['["괜찮습니다"]']
    await session.recognizer.emit_final("다시 말씀해 주세요")
    await wait_until(lambda: "recommendations" in notifier.names())

    session.close()
    await session.wait_closed()


async def test_completion_arriving_after_close_is_discarded(make_session, notifier, llm):
    llm.release = asyncio.Event()
    session = await active_session(make_session)

    await session.recognizer.emit_final("예약 가능할까요")
    await wait_until(lambda: len(llm.calls) == 1)

    session.close(reason="transport closed")
    llm.release.set()
    await session.wait_closed()

    assert notifier.names() == ["stt.final"]
    assert [t.role for t in session.history.turns()] == [Role.CALLER]


async def test_recognition_after_close_is_ignored(make_session, notifier, llm):
    session = await active_session(make_session)
    session.close()

    await session.recognizer.emit_final("늦게 도착한 결과")
    await session.wait_closed()

    assert notifier.events == []
    assert llm.calls == []


async def test_history_cap_applies_to_session(make_session, notifier, llm, clock, session_config):
    session = await active_session(make_session)

    for i in range(15):
        clock.advance_ms(3000)
        await session.process_final(f"질문 번호 {i}")

    assert len(session.history) == session_config.history_limit
    assert session.history.turns()[-2].content == "질문 번호 14"

    session.close()
    await session.wait_closed()
