"""
FastAPI server for the call copilot.
Bridges Telnyx media streams with Deepgram STT/TTS and Bedrock, and relays
transcripts and reply candidates to operator sockets.
"""

import json
import logging
import os
import certifi
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import Config
from .call_manager import CallManager
from .call_registry import CallRegistry
from .conversation import announcement_script
from .llm_handler import LLMHandler
from .operator_hub import OperatorHub
from .reply_extractor import default_suggestions
from .session import CallSession
from .stt_handler import STTHandler
from .tts_handler import TTSHandler

os.environ['SSL_CERT_FILE'] = certifi.where()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if session_manager:
        await session_manager.close_all()


app = FastAPI(title="Call Copilot Server", lifespan=lifespan)

NOT_ON_CALL_MESSAGE = "통화 중이 아닙니다."


class SessionManager:
    """Creates media sessions and runs operator commands against live calls."""

    def __init__(
        self,
        config: Config,
        call_manager: CallManager,
        tts: Any,
        llm: Any,
        recognizer_factory: Optional[Callable[[], Any]] = None,
        registry: Optional[CallRegistry] = None,
        operators: Optional[OperatorHub] = None,
    ):
        self.config = config
        self.call_manager = call_manager
        self.tts = tts
        self.llm = llm
        self.registry = registry or CallRegistry()
        self.operators = operators or OperatorHub()
        self._recognizer_factory = recognizer_factory or (lambda: STTHandler(config.deepgram))
        self.sessions: set[CallSession] = set()

    def create_session(self, websocket: WebSocket, call_id: Optional[str] = None) -> CallSession:
        """Create a session for a newly connected media socket."""
        session = CallSession(
            stream_handle=websocket,
            registry=self.registry,
            recognizer=self._recognizer_factory(),
            llm=self.llm,
            notifier=self.operators,
            config=self.config.session,
            call_id=call_id,
        )
        self.sessions.add(session)
        return session

    async def finish_session(self, session: CallSession, reason: str) -> None:
        """Close a session and wait for its teardown."""
        session.close(reason=reason)
        await session.wait_closed()
        self.sessions.discard(session)
        logger.info(f"Session {session.label} finished ({session.close_reason})")

    async def close_all(self) -> None:
        for session in list(self.sessions):
            await self.finish_session(session, reason="shutdown")

    async def speak_into_call(self, call_id: str, text: str) -> str:
        """Synthesize ``text`` and play it into ``call_id``. Returns the audio URL."""
        path = await self.tts.synthesize_to_file(text)
        audio_url = self.config.server.audio_url(path.name)
        await self.call_manager.play_to_call(call_id, audio_url)
        return audio_url

    async def say(self, websocket: WebSocket, text: Optional[str]) -> None:
        """Operator free-text: speak into whichever call an operator is bound to."""
        text = (text or "").strip()
        if not text:
            await self.operators.send(websocket, "say.error", {"message": "empty text"})
            return

        call_id = self.operators.active_call_id()
        if not call_id:
            await self.operators.send(websocket, "say.error", {"message": NOT_ON_CALL_MESSAGE})
            return

        try:
            audio_url = await self.speak_into_call(call_id, text)
        except Exception as e:
            logger.error(f"Say playback error: {e}")
            await self.operators.send(websocket, "say.error", {"message": str(e)})
            return

        await self.operators.send(websocket, "say.result", {"ok": True, "audioUrl": audio_url})
        logger.info(f"Say played into {call_id}: {text}")

    async def play_reply(self, websocket: WebSocket, text: Optional[str], call_id: Optional[str]) -> None:
        """Operator picked a candidate: play it into its call."""
        text = (text or "").strip()
        call_id = call_id or self.operators.active_call_id()
        if not text or not call_id:
            await self.operators.send(
                websocket,
                "reply.error",
                {"message": NOT_ON_CALL_MESSAGE if text else "empty text"},
            )
            return

        try:
            audio_url = await self.speak_into_call(call_id, text)
        except Exception as e:
            logger.error(f"Reply playback error: {e}")
            await self.operators.send(websocket, "reply.error", {"message": str(e), "callSid": call_id})
            return

        await self.operators.send(websocket, "reply.result", {"ok": True, "callSid": call_id, "audioUrl": audio_url})
        logger.info(f"Selected reply played into {call_id}: {text}")

    async def place_call(self, phone: str, intent_text: str) -> dict:
        """Synthesize the announcement and dial ``phone``."""
        script = announcement_script(intent_text)
        path = await self.tts.synthesize_to_file(script)
        audio_url = self.config.server.audio_url(path.name)

        call_state = await self.call_manager.initiate_call(phone, announcement_url=audio_url)
        logger.info(f"Call initiated: {call_state.call_control_id}")
        return {"callSid": call_state.call_control_id, "script": script, "audioUrl": audio_url}

    async def handle_webhook(self, event_type: str, payload: dict) -> None:
        await self.operators.publish(
            "call.event",
            {"type": event_type, "callSid": payload.get("call_control_id")},
        )

        call_id = self.call_manager.handle_webhook_event(event_type, payload)
        if not call_id:
            return

        if event_type == "call.answered":
            call_state = self.call_manager.active_calls.get(call_id)
            await self.call_manager.start_media_streaming(call_id)
            if call_state and call_state.announcement_url:
                await self.call_manager.play_audio(call_id, call_state.announcement_url)
        elif event_type == "call.hangup":
            self.operators.release_call(call_id)

    async def hangup(self, websocket: WebSocket, call_id: Optional[str]) -> None:
        """Operator ends a call: ``call_id`` or the active one."""
        call_id = call_id or self.operators.active_call_id()
        if not call_id:
            await self.operators.send(websocket, "hangup.error", {"message": NOT_ON_CALL_MESSAGE})
            return

        try:
            await self.call_manager.hangup(call_id)
        except Exception as e:
            logger.error(f"Hangup error: {e}")
            await self.operators.send(websocket, "hangup.error", {"message": str(e), "callSid": call_id})
            return

        self.operators.release_call(call_id)
        await self.operators.send(websocket, "hangup.result", {"ok": True, "callSid": call_id})

    async def handle_operator_message(self, websocket: WebSocket, message: dict) -> None:
        event = message.get("event")
        data = message.get("data") or {}

        if event == "bind.call":
            self.operators.bind_call(websocket, data.get("callSid"))
        elif event == "say":
            await self.say(websocket, data.get("text"))
        elif event == "reply.selected":
            await self.play_reply(websocket, data.get("text"), data.get("callSid"))
        elif event == "hangup":
            await self.hangup(websocket, data.get("callSid"))
        else:
            logger.warning(f"Unknown operator event: {event}")


session_manager: Optional[SessionManager] = None


def init_session_manager(config: Config, call_manager: CallManager) -> SessionManager:
    """Initialize the global session manager and the /audio mount."""
    global session_manager
    tts = TTSHandler(config.deepgram, config.server.audio_dir)
    tts.ensure_dir()
    session_manager = SessionManager(config, call_manager, tts=tts, llm=LLMHandler(config.bedrock))
    mount_audio(config.server.audio_dir)
    return session_manager


def mount_audio(audio_dir: str) -> None:
    """Serve generated audio files at /audio."""
    if any(getattr(route, "path", None) == "/audio" for route in app.routes):
        return
    Path(audio_dir).mkdir(parents=True, exist_ok=True)
    app.mount("/audio", StaticFiles(directory=audio_dir), name="audio")


@app.websocket("/media")
async def media_websocket(websocket: WebSocket):
    """WebSocket endpoint for Telnyx media streaming."""
    await websocket.accept()
    if not session_manager:
        logger.error("Session manager not initialized, rejecting media stream")
        await websocket.close()
        return

    call_id = websocket.query_params.get("call_control_id")
    session = session_manager.create_session(websocket, call_id)
    session.start()

    try:
        while not session.is_closed:
            data = await websocket.receive_text()
            session.handle_frame(data)

    except WebSocketDisconnect:
        logger.info(f"Media WebSocket disconnected: {session.label}")
    except Exception as e:
        logger.error(f"Media WebSocket error: {e}", exc_info=True)
    finally:
        await session_manager.finish_session(session, reason="transport closed")


@app.websocket("/operator")
async def operator_websocket(websocket: WebSocket):
    """WebSocket endpoint for the operator console."""
    await websocket.accept()
    if not session_manager:
        await websocket.close()
        return

    operators = session_manager.operators
    operators.connect(websocket)
    await operators.send(
        websocket,
        "recommendations",
        {"callSid": None, "replies": default_suggestions()},
    )

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except ValueError:
                logger.warning(f"Ignoring malformed operator message: {data[:100]!r}")
                continue
            if isinstance(message, dict):
                await session_manager.handle_operator_message(websocket, message)

    except WebSocketDisconnect:
        logger.info("Operator WebSocket disconnected")
    finally:
        operators.disconnect(websocket)


@app.post("/calls")
async def create_call(request: Request):
    """Place an outbound call that opens with a synthesized announcement."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    phone = (body.get("phone") or "").strip() if isinstance(body, dict) else ""
    intent_text = (body.get("intentText") or "").strip() if isinstance(body, dict) else ""
    if not phone or not intent_text:
        return JSONResponse({"error": "phone and intentText required"}, status_code=400)

    if not session_manager:
        return JSONResponse({"error": "server not initialized"}, status_code=503)

    try:
        result = await session_manager.place_call(phone, intent_text)
    except Exception as e:
        logger.error(f"Failed to place call: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)

    return JSONResponse(result)


@app.post("/webhook")
async def telnyx_webhook(request: Request):
    """HTTP endpoint for Telnyx webhooks."""
    try:
        payload = await request.json()

        data = payload.get("data", {})
        event_type = data.get("event_type", "")
        event_payload = data.get("payload", {})

        logger.info(f"Webhook event: {event_type}")

        if session_manager:
            await session_manager.handle_webhook(event_type, event_payload)

        return JSONResponse({"status": "ok"})

    except Exception as e:
        logger.error(f"Webhook error: {e}")
        return JSONResponse({"status": "error", "message": str(e)}, status_code=500)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    active = len(session_manager.registry) if session_manager else 0
    return {"status": "healthy", "activeCalls": active}
