"""Twilio Media Streams wire format.

WebSocket message flow:
  <- {"event": "connected", "protocol": "Call", "version": "1.0.0"}
  <- {"event": "start", "start": {"streamSid": "...", "callSid": "..."}}
  <- {"event": "media", "media": {"track": "inbound", "payload": "<base64 mulaw>"}}
  <- {"event": "stop"}

  -> {"event": "media", "streamSid": "...", "media": {"payload": "<base64 mulaw>"}}
  -> {"event": "mark", "streamSid": "...", "mark": {"name": "..."}}
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

LOGGER = logging.getLogger(__name__)

TELEPHONY_EVENTS = frozenset({"connected", "start", "media", "stop"})


@dataclass(frozen=True, slots=True)
class TelephonyEvent:
    event: str
    stream_sid: str = ""
    call_sid: str = ""
    payload: str = ""


def parse_twilio_ws_message(text: str | bytes) -> dict[str, Any]:
    """Decode one Media Streams message.

    Raises:
        ValueError: if the text is not a JSON object.
    """

    message = json.loads(text)
    if not isinstance(message, dict):
        raise ValueError("Media Streams message is not a JSON object")
    return message


def parse_telephony_event(message: dict[str, Any]) -> TelephonyEvent | None:
    """Map a decoded message to a ``TelephonyEvent``; None means drop it."""

    event = message.get("event")
    if event not in TELEPHONY_EVENTS:
        return None

    if event == "start":
        start = message.get("start")
        start = start if isinstance(start, dict) else {}
        return TelephonyEvent(
            event=event,
            stream_sid=str(start.get("streamSid") or message.get("streamSid") or ""),
            call_sid=str(start.get("callSid") or message.get("callSid") or ""),
        )

    if event == "media":
        media = message.get("media")
        if not isinstance(media, dict):
            return None
        if media.get("track") and media.get("track") != "inbound":
            return None
        payload = media.get("payload")
        if not isinstance(payload, str) or not payload:
            return None
        return TelephonyEvent(event=event, stream_sid=str(message.get("streamSid") or ""), payload=payload)

    return TelephonyEvent(event=event, stream_sid=str(message.get("streamSid") or ""))


def build_media_message(stream_sid: str, frame: bytes) -> dict[str, Any]:
    return {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(frame).decode("ascii")},
    }


def build_mark_message(stream_sid: str, name: str) -> dict[str, Any]:
    return {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}


class TwilioMediaStream:
    """Telephony side of a call session, backed by the accepted FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def messages(self) -> AsyncIterator[str]:
        try:
            while self._ws.application_state == WebSocketState.CONNECTED:
                yield await self._ws.receive_text()
        except WebSocketDisconnect:
            return

    async def send_json(self, message: dict[str, Any]) -> None:
        await self._ws.send_text(json.dumps(message))

    async def close(self) -> None:
        if self._ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close()
        except RuntimeError as exc:
            LOGGER.debug("Media stream already closed: %s", exc)
