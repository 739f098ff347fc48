"""
Telnyx call management.
Handles outbound call placement, media streaming and playback into live calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from telnyx import Telnyx

from .config import TelnyxConfig, ServerConfig

logger = logging.getLogger(__name__)


@dataclass
class CallState:
    """Tracks the state of a placed call."""
    call_control_id: str
    call_leg_id: str
    to_number: str
    from_number: str
    status: str = "initiated"
    announcement_url: Optional[str] = None
    stream_id: Optional[str] = None


class CallManager:
    """Manages Telnyx outbound calls."""

    def __init__(self, config: TelnyxConfig, server: ServerConfig):
        """
        Initialize the call manager.

        Args:
            config: Telnyx configuration
            server: Server configuration (public URLs for streams and audio)
        """
        self.config = config
        self.server = server
        self.client = Telnyx(api_key=config.api_key)
        self.active_calls: dict[str, CallState] = {}

    async def initiate_call(
        self,
        to_number: str,
        announcement_url: Optional[str] = None,
        from_number: Optional[str] = None,
    ) -> CallState:
        """
        Place an outbound call. The announcement plays once it is answered.

        Args:
            to_number: Destination phone number (E.164 format)
            announcement_url: Audio played when the callee picks up
            from_number: Caller ID (defaults to configured number)

        Returns:
            CallState object tracking the call
        """
        from_number = from_number or self.config.phone_number

        logger.info(f"Initiating call to {to_number} from {from_number}")

        response = await asyncio.to_thread(
            self.client.calls.dial,
            connection_id=self.config.connection_id,
            to=to_number,
            from_=from_number,
            webhook_url=f"{self.server.public_host}/webhook",
            webhook_url_method="POST",
        )

        call_data = response.data
        call_state = CallState(
            call_control_id=call_data.call_control_id,
            call_leg_id=call_data.call_leg_id,
            to_number=to_number,
            from_number=from_number,
            announcement_url=announcement_url,
        )

        self.active_calls[call_state.call_control_id] = call_state
        logger.info(f"Call initiated with control_id: {call_state.call_control_id}")

        return call_state

    async def start_media_streaming(self, call_control_id: str) -> None:
        """Stream the callee's audio to our /media endpoint."""
        logger.info(f"Starting media stream for call {call_control_id}")

        await asyncio.to_thread(
            self.client.calls.actions.start_streaming,
            call_control_id=call_control_id,
            stream_url=self.server.media_stream_url(call_control_id),
            stream_track="inbound_track",
        )

        call_state = self.active_calls.get(call_control_id)
        if call_state:
            call_state.status = "streaming"

    async def play_audio(self, call_control_id: str, audio_url: str) -> None:
        """Play an audio URL into the call."""
        logger.info(f"Playing {audio_url} into call {call_control_id}")
        await asyncio.to_thread(
            self.client.calls.actions.start_playback,
            call_control_id=call_control_id,
            audio_url=audio_url,
        )

    async def play_to_call(self, call_control_id: str, audio_url: str) -> None:
        """
        Update a live call: (re)start streaming to us and play ``audio_url``.

        Re-issuing the stream makes Telnyx open a fresh media socket for the
        same call, which supersedes the previous one.
        """
        await self.start_media_streaming(call_control_id)
        await self.play_audio(call_control_id, audio_url)

    async def hangup(self, call_control_id: str) -> None:
        """Hang up a call."""
        logger.info(f"Hanging up call {call_control_id}")

        try:
            await asyncio.to_thread(
                self.client.calls.actions.hangup,
                call_control_id=call_control_id,
            )
        finally:
            self.active_calls.pop(call_control_id, None)

    def handle_webhook_event(self, event_type: str, payload: dict) -> Optional[str]:
        """
        Update call bookkeeping from a Telnyx webhook event.

        Returns:
            Call control ID if relevant
        """
        call_control_id = payload.get("call_control_id")

        if event_type == "call.answered":
            logger.info(f"Call {call_control_id} answered")
            if call_control_id in self.active_calls:
                self.active_calls[call_control_id].status = "answered"
            return call_control_id

        elif event_type == "call.hangup":
            logger.info(f"Call {call_control_id} hung up")
            self.active_calls.pop(call_control_id, None)
            return call_control_id

        elif event_type == "streaming.started":
            stream_id = payload.get("stream_id")
            logger.info(f"Streaming started for call {call_control_id}, stream_id: {stream_id}")
            if call_control_id in self.active_calls:
                self.active_calls[call_control_id].stream_id = stream_id
            return call_control_id

        elif event_type == "streaming.stopped":
            logger.info(f"Streaming stopped for call {call_control_id}")
            return call_control_id

        return None
