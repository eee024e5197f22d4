"""Twilio Voice integration.

This module provides:
- TwiML that connects a call to the bidirectional media stream.
- Status callback logging.
- Outbound call trigger.
- The media stream WebSocket, one ``CallSession`` per connection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, Request, Response, WebSocket

from api.dependencies import (
    get_call_control,
    get_optional_call_control,
    get_realtime_factory,
    get_session_registry,
)
from api.schemas import TriggerCallRequest, TriggerCallResponse
from bridge.session import AIPeer, CallSession, SessionRegistry
from config.settings import get_settings
from integrations.twilio_client import TwilioCallControl, normalize_phone_number, stream_twiml
from integrations.twilio_streaming import TwilioMediaStream

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

STREAM_PATH = "/api/twilio/stream"


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        base = settings.public_base_url.rstrip("/")
    else:
        # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
        base = str(request.base_url).rstrip("/")
    return _to_ws_url(base + STREAM_PATH)


@router.api_route("/twiml", methods=["GET", "POST"])
async def twilio_twiml(request: Request) -> Response:
    stream_url = _stream_url(request)
    LOGGER.info("TwiML %s stream=%s", request.method, stream_url)
    return _twiml_response(stream_twiml(stream_url))


@router.post("/status", status_code=204)
async def twilio_status_callback(request: Request) -> Response:
    form = await request.form()
    LOGGER.info("Twilio status callback: %s", dict(form))
    return Response(status_code=204)


@router.post("/calls", response_model=TriggerCallResponse)
async def trigger_call(
    payload: TriggerCallRequest,
    request: Request,
    call_control: TwilioCallControl = Depends(get_call_control),
) -> TriggerCallResponse:
    to = normalize_phone_number(payload.to or payload.phone)
    placed = await call_control.place_call(to, call_control.from_number, _stream_url(request))
    LOGGER.info("Outbound call created sid=%s status=%s", placed.call_sid, placed.status)
    return TriggerCallResponse(call_sid=placed.call_sid, status=placed.status, used=placed.used)


@router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    realtime_factory: Callable[[], AIPeer] = Depends(get_realtime_factory),
    call_control: TwilioCallControl | None = Depends(get_optional_call_control),
    registry: SessionRegistry = Depends(get_session_registry),
) -> None:
    await websocket.accept()
    session = CallSession(TwilioMediaStream(websocket), realtime_factory(), call_control=call_control)
    LOGGER.info("[%s] Media stream accepted from %s", session.session_id, websocket.client)
    registry.add(session)
    try:
        await session.run()
    finally:
        registry.discard(session)
        LOGGER.info("[%s] Session ended: %s", session.session_id, session.close_reason)
