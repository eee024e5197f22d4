"""Normalization of Realtime API server events.

The Realtime API has renamed several events over time (``response.audio.delta``
vs ``response.output_audio.delta`` and so on). Every spelling we accept is
listed once in ``EVENT_TABLE``; the rest of the bridge only sees ``AIEventKind``.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class AIEventKind(str, Enum):
    SESSION_READY = "session-ready"
    AUDIO_DELTA = "audio-delta"
    TRANSCRIPT = "transcript"
    FUNCTION_CALL_DELTA = "function-call-arguments-delta"
    FUNCTION_CALL_DONE = "function-call-arguments-done"
    RESPONSE_FINISHED = "response-finished"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AIEvent:
    kind: AIEventKind
    type: str
    audio: bytes = b""
    text: str = ""
    role: str = ""
    call_id: str = ""
    name: str = ""
    arguments: str = ""
    error: Any = None


EVENT_TABLE: dict[str, tuple[AIEventKind, str]] = {
    "session.created": (AIEventKind.SESSION_READY, ""),
    "session.updated": (AIEventKind.SESSION_READY, ""),
    "response.audio.delta": (AIEventKind.AUDIO_DELTA, "assistant"),
    "response.output_audio.delta": (AIEventKind.AUDIO_DELTA, "assistant"),
    "response.delta": (AIEventKind.AUDIO_DELTA, "assistant"),
    "conversation.item.input_audio_transcription.completed": (AIEventKind.TRANSCRIPT, "user"),
    "input_audio_transcription.completed": (AIEventKind.TRANSCRIPT, "user"),
    "response.audio_transcript.done": (AIEventKind.TRANSCRIPT, "assistant"),
    "response.output_audio_transcript.done": (AIEventKind.TRANSCRIPT, "assistant"),
    "response.text.done": (AIEventKind.TRANSCRIPT, "assistant"),
    "response.output_text.done": (AIEventKind.TRANSCRIPT, "assistant"),
    "response.output_item.added": (AIEventKind.FUNCTION_CALL_DELTA, "assistant"),
    "response.function_call_arguments.delta": (AIEventKind.FUNCTION_CALL_DELTA, "assistant"),
    "response.tool_call.created": (AIEventKind.FUNCTION_CALL_DELTA, "assistant"),
    "response.tool_call.delta": (AIEventKind.FUNCTION_CALL_DELTA, "assistant"),
    "response.function_call_arguments.done": (AIEventKind.FUNCTION_CALL_DONE, "assistant"),
    "response.output_item.done": (AIEventKind.FUNCTION_CALL_DONE, "assistant"),
    "response.tool_call.completed": (AIEventKind.FUNCTION_CALL_DONE, "assistant"),
    "response.done": (AIEventKind.RESPONSE_FINISHED, "assistant"),
    "response.completed": (AIEventKind.RESPONSE_FINISHED, "assistant"),
    "response.cancelled": (AIEventKind.RESPONSE_FINISHED, "assistant"),
    "response.error": (AIEventKind.ERROR, "assistant"),
    "error": (AIEventKind.ERROR, ""),
}

# Output items are only relevant when they carry a function call.
OUTPUT_ITEM_EVENTS = frozenset({"response.output_item.added", "response.output_item.done"})


def _decode_audio(message: dict[str, Any]) -> bytes | None:
    delta = message.get("delta")
    if isinstance(delta, dict):
        delta = delta.get("audio")
    if not isinstance(delta, str) or not delta:
        return None
    try:
        return base64.b64decode(delta, validate=True)
    except (binascii.Error, ValueError):
        return None


def _tool_name(message: dict[str, Any]) -> str:
    tool = message.get("tool")
    name = message.get("name") or message.get("tool_name") or (tool.get("name") if isinstance(tool, dict) else None)
    return str(name or "")


def _function_call_item(kind: AIEventKind, event_type: str, role: str, item: Any) -> AIEvent | None:
    # The beta protocol names the tool only on the output item, keyed by call_id.
    if not isinstance(item, dict) or item.get("type") != "function_call":
        return None
    arguments = item.get("arguments") if kind is AIEventKind.FUNCTION_CALL_DONE else ""
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    return AIEvent(
        kind=kind,
        type=event_type,
        role=role,
        call_id=str(item.get("call_id") or item.get("id") or ""),
        name=str(item.get("name") or ""),
        arguments=arguments if isinstance(arguments, str) else "",
    )


def normalize_ai_event(message: Any) -> AIEvent | None:
    """Translate one decoded server event into an ``AIEvent``.

    Returns None for unknown event types and for events whose payload is
    malformed; both are dropped by the caller.
    """

    if not isinstance(message, dict):
        return None
    event_type = message.get("type")
    if not isinstance(event_type, str):
        return None
    entry = EVENT_TABLE.get(event_type)
    if entry is None:
        return None
    kind, role = entry

    if kind is AIEventKind.AUDIO_DELTA:
        audio = _decode_audio(message)
        if not audio:
            return None
        return AIEvent(kind=kind, type=event_type, audio=audio, role=role)

    if kind is AIEventKind.TRANSCRIPT:
        text = message.get("transcript")
        if not isinstance(text, str):
            text = message.get("text")
        if not isinstance(text, str):
            return None
        return AIEvent(kind=kind, type=event_type, text=text, role=role)

    if event_type in OUTPUT_ITEM_EVENTS:
        return _function_call_item(kind, event_type, role, message.get("item"))

    if kind in (AIEventKind.FUNCTION_CALL_DELTA, AIEventKind.FUNCTION_CALL_DONE):
        field = "delta" if kind is AIEventKind.FUNCTION_CALL_DELTA else "arguments"
        arguments = message.get(field)
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        return AIEvent(
            kind=kind,
            type=event_type,
            role=role,
            call_id=str(message.get("call_id") or message.get("item_id") or ""),
            name=_tool_name(message),
            arguments=arguments if isinstance(arguments, str) else "",
        )

    if kind is AIEventKind.ERROR:
        return AIEvent(kind=kind, type=event_type, role=role, error=message.get("error"))

    return AIEvent(kind=kind, type=event_type, role=role)
