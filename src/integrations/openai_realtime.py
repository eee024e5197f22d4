"""OpenAI Realtime API connection and client event builders."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

import websockets

from bridge.errors import RealtimeConnectionError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

HANGUP_TOOL_NAME = "hangup_call"

HANGUP_TOOL: dict[str, Any] = {
    "type": "function",
    "name": HANGUP_TOOL_NAME,
    "description": "Hang up the current phone call immediately when the caller says goodbye or the task is done.",
    "parameters": {
        "type": "object",
        "properties": {"reason": {"type": "string", "description": "why the call should be ended"}},
    },
}

MODALITIES = ["audio", "text"]


def session_update_message(settings: Settings) -> dict[str, Any]:
    """Session configuration sent once after connecting.

    Server-side turn detection is disabled: the bridge commits the input
    buffer and requests responses itself.
    """

    return {
        "type": "session.update",
        "session": {
            "instructions": settings.session_instructions,
            "modalities": MODALITIES,
            "voice": settings.voice,
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "input_audio_transcription": {
                "model": settings.transcription_model,
                "language": settings.lang,
            },
            "turn_detection": None,
            "tools": [HANGUP_TOOL],
            "tool_choice": "auto",
        },
    }


def append_message(audio_b64: str) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": audio_b64}


def commit_message() -> dict[str, Any]:
    return {"type": "input_audio_buffer.commit"}


def response_create_message(instructions: str | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"modalities": MODALITIES}
    if instructions:
        response["instructions"] = instructions
    return {"type": "response.create", "response": response}


class RealtimeConnection:
    """Thin wrapper over the Realtime WebSocket.

    Keep-alive pings are sent by the owning session, so the library's own
    ping loop is disabled.
    """

    def __init__(self, url: str, *, api_key: str | None, model: str) -> None:
        self._url = f"{url}?{urlencode({'model': model})}"
        self._api_key = api_key
        self._ws: websockets.ClientConnection | None = None

    @property
    def url(self) -> str:
        return self._url

    async def connect(self) -> None:
        if not self._api_key:
            LOGGER.error("OPENAI_API_KEY missing")
        headers = {
            "Authorization": f"Bearer {self._api_key or ''}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await websockets.connect(
                self._url,
                additional_headers=headers,
                ping_interval=None,
                max_size=None,
            )
        except (OSError, websockets.InvalidHandshake) as exc:
            raise RealtimeConnectionError(f"Realtime connect failed: {exc}") from exc
        LOGGER.info("Realtime connection open: %s", self._url)

    async def messages(self) -> AsyncIterator[str | bytes]:
        if self._ws is None:
            return
        try:
            async for message in self._ws:
                yield message
        except websockets.ConnectionClosedError as exc:
            LOGGER.warning("Realtime connection closed with error: %s", exc)

    async def send_json(self, message: dict[str, Any]) -> None:
        if self._ws is None:
            raise RealtimeConnectionError("Realtime connection is not open")
        await self._ws.send(json.dumps(message))

    async def ping(self) -> None:
        if self._ws is not None:
            await self._ws.ping()

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()


def build_realtime_connection(settings: Settings | None = None) -> RealtimeConnection:
    settings = settings or get_settings()
    return RealtimeConnection(
        settings.realtime_url,
        api_key=settings.openai_api_key,
        model=settings.realtime_model,
    )
