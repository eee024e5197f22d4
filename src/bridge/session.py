"""Per-call session bridging a Twilio media stream to the Realtime voice AI.

Each session owns its pacer, turn controller and hangup coordinator plus both
peer connections. Nothing is shared between sessions; the registry below only
tracks which sessions are alive.

Inbound messages from either peer and all timer callbacks (pacer ticks, the
commit deadline, the drain poll, the heartbeat) run under one ``asyncio.Lock``
per session, so state transitions never interleave.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any, Protocol

from bridge.errors import BridgeError
from bridge.farewell import FarewellMatcher
from bridge.hangup import REASON_TRANSPORT, HangupCoordinator, HangupState
from bridge.turns import TurnController
from config.settings import Settings, get_settings
from integrations.openai_realtime import HANGUP_TOOL_NAME, session_update_message
from integrations.realtime_events import AIEvent, AIEventKind, normalize_ai_event
from integrations.twilio_streaming import (
    TelephonyEvent,
    build_mark_message,
    build_media_message,
    parse_telephony_event,
    parse_twilio_ws_message,
)
from telephony.g711 import make_beep_ulaw
from telephony.pacer import OutputPacer

LOGGER = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


_LIFECYCLE_ORDER = {
    LifecycleState.CONNECTING: 0,
    LifecycleState.ACTIVE: 1,
    LifecycleState.DRAINING: 2,
    LifecycleState.CLOSED: 3,
}


class TelephonyPeer(Protocol):
    def messages(self) -> AsyncIterator[str]:  # pragma: no cover - protocol stub
        ...

    async def send_json(self, message: dict[str, Any]) -> None:  # pragma: no cover - protocol stub
        ...

    async def close(self) -> None:  # pragma: no cover - protocol stub
        ...


class AIPeer(TelephonyPeer, Protocol):
    async def connect(self) -> None:  # pragma: no cover - protocol stub
        ...

    async def ping(self) -> None:  # pragma: no cover - protocol stub
        ...


class CallControl(Protocol):
    async def terminate_call(self, call_sid: str) -> bool:  # pragma: no cover - protocol stub
        ...


class CallSession:
    """One bridged phone call."""

    def __init__(
        self,
        telephony: TelephonyPeer,
        ai: AIPeer,
        *,
        settings: Settings | None = None,
        call_control: CallControl | None = None,
        session_id: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._telephony = telephony
        self._ai = ai
        self._call_control = call_control
        self.session_id = session_id or secrets.token_hex(4)

        self.stream_sid = ""
        self.call_sid = ""
        self.close_reason = ""
        self._state = LifecycleState.CONNECTING
        self._lock = asyncio.Lock()
        self._closed_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._tool_arguments: dict[str, str] = {}
        self._tool_names: dict[str, str] = {}
        self._completed_calls: set[str] = set()

        cfg = self._settings
        self.pacer = OutputPacer(
            self._send_frame,
            frame_size=cfg.frame_size_bytes,
            frame_interval_ms=cfg.frame_interval_ms,
            closed=self._is_closed,
            lock=self._lock,
            max_queue_bytes=cfg.max_outbound_queue_bytes,
        )
        self.turns = TurnController(
            self._send_ai,
            self.pacer,
            debounce_ms=cfg.commit_debounce_ms,
            closed=self._is_closed,
            lock=self._lock,
        )
        self.hangup = HangupCoordinator(
            self.pacer,
            self._terminate,
            matcher=FarewellMatcher(cfg.effective_farewell_locale, cfg.farewell_extra_phrases),
            response_in_flight=lambda: self.turns.awaiting_response,
            request_goodbye=self.turns.request_goodbye,
            goodbye_instructions=cfg.goodbye_instructions,
            drain_poll_ms=cfg.drain_poll_ms,
            drain_grace_ms=cfg.drain_grace_ms,
            closed=self._is_closed,
            lock=self._lock,
            on_transition=self._on_hangup_transition,
        )
        self.turns.attach_hangup(self.hangup)

    @property
    def lifecycle_state(self) -> LifecycleState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is LifecycleState.CLOSED

    async def run(self) -> None:
        """Connect the AI peer, pump both connections and return once the call is closed."""

        try:
            await self._ai.connect()
        except BridgeError as exc:
            LOGGER.error("[%s] Realtime connection failed: %s", self.session_id, exc)
            await self.close("realtime-connect-failed")
            return

        await self._send_ai(session_update_message(self._settings))

        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._pump_telephony()),
            loop.create_task(self._pump_ai()),
            loop.create_task(self._heartbeat()),
        ]
        try:
            await self._closed_event.wait()
        finally:
            if not self.closed:
                await self.close("session-cancelled")
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle_telephony_message(self, raw: str | bytes) -> None:
        try:
            message = parse_twilio_ws_message(raw)
        except ValueError:
            LOGGER.debug("[%s] Dropping malformed media stream message", self.session_id)
            return
        event = parse_telephony_event(message)
        if event is None:
            return
        async with self._lock:
            if self.closed:
                return
            await self._dispatch_telephony(event)

    async def handle_ai_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            LOGGER.debug("[%s] Dropping malformed realtime message", self.session_id)
            return
        event = normalize_ai_event(message)
        if event is None:
            if isinstance(message, dict):
                LOGGER.debug("[%s] Ignoring realtime event %s", self.session_id, message.get("type"))
            return
        async with self._lock:
            if self.closed:
                return
            await self._dispatch_ai(event)

    async def close(self, reason: str) -> None:
        """Close immediately, without draining queued audio."""

        async with self._lock:
            await self._shutdown(reason, terminate_call=False)

    async def _dispatch_telephony(self, event: TelephonyEvent) -> None:
        if event.event == "connected":
            LOGGER.info("[%s] Media stream connected", self.session_id)
            return

        if event.event == "start":
            first_start = self._state is LifecycleState.CONNECTING
            self.stream_sid = event.stream_sid or self.stream_sid or "STREAM"
            self.call_sid = event.call_sid or self.call_sid
            self._advance(LifecycleState.ACTIVE)
            LOGGER.info(
                "[%s] Stream start streamSid=%s callSid=%s lang=%s",
                self.session_id,
                self.stream_sid,
                self.call_sid or "-",
                self._settings.lang,
            )
            if not first_start:
                return
            if self._settings.start_beep_enabled:
                self.pacer.enqueue(make_beep_ulaw(sample_rate=self._settings.sample_rate))
            if self._settings.greeting_instructions:
                await self.turns.request_response(self._settings.greeting_instructions)
            return

        if event.event == "media":
            await self.turns.on_inbound_audio(event.payload)
            return

        if event.event == "stop":
            LOGGER.info("[%s] Media stream stop", self.session_id)
            await self._shutdown(REASON_TRANSPORT, terminate_call=False)

    async def _dispatch_ai(self, event: AIEvent) -> None:
        kind = event.kind

        if kind is AIEventKind.SESSION_READY:
            LOGGER.info("[%s] Realtime session ready (%s)", self.session_id, event.type)
        elif kind is AIEventKind.AUDIO_DELTA:
            self.turns.on_response_audio_delta(event.audio)
        elif kind is AIEventKind.TRANSCRIPT:
            LOGGER.debug("[%s] %s said: %s", self.session_id, event.role, event.text)
            if event.role == "user":
                await self.hangup.on_caller_transcript(event.text)
            else:
                await self.hangup.on_assistant_transcript(event.text)
        elif kind is AIEventKind.FUNCTION_CALL_DELTA:
            if event.name:
                self._tool_names[event.call_id] = event.name
            if event.arguments:
                self._tool_arguments[event.call_id] = self._tool_arguments.get(event.call_id, "") + event.arguments
        elif kind is AIEventKind.FUNCTION_CALL_DONE:
            # Both the arguments-done and the output-item-done events close a call.
            if event.call_id and event.call_id in self._completed_calls:
                return
            if event.call_id:
                self._completed_calls.add(event.call_id)
            buffered = self._tool_arguments.pop(event.call_id, "")
            name = event.name or self._tool_names.pop(event.call_id, "")
            self._tool_names.pop(event.call_id, None)
            if name == HANGUP_TOOL_NAME:
                LOGGER.info("[%s] %s requested by tool", self.session_id, HANGUP_TOOL_NAME)
                await self.hangup.on_tool_call(event.arguments or buffered)
            else:
                LOGGER.warning("[%s] Ignoring unknown tool call %r", self.session_id, name)
        elif kind is AIEventKind.RESPONSE_FINISHED:
            await self.turns.on_response_finished()
        elif kind is AIEventKind.ERROR:
            LOGGER.warning("[%s] Realtime error event %s: %s", self.session_id, event.type, event.error)
            await self.turns.on_response_error()

    async def _send_ai(self, message: dict[str, Any]) -> None:
        try:
            await self._ai.send_json(message)
        except Exception as exc:
            LOGGER.warning("[%s] Realtime send failed (%s): %s", self.session_id, message.get("type"), exc)

    async def _send_frame(self, frame: bytes) -> None:
        await self._telephony.send_json(build_media_message(self.stream_sid, frame))

    async def _terminate(self, reason: str) -> None:
        await self._shutdown(reason, terminate_call=True)

    async def _shutdown(self, reason: str, *, terminate_call: bool) -> None:
        # Caller holds the session lock.
        if self.closed:
            return
        self._advance(LifecycleState.CLOSED)
        self.close_reason = reason
        LOGGER.info("[%s] Closing session: %s", self.session_id, reason)

        self.turns.cancel()
        self.pacer.stop()
        self.hangup.abort(reason)
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        await self._close_peer(self._ai, "realtime")
        await self._close_peer(self._telephony, "media stream")

        if terminate_call and self.call_sid and self._call_control is not None:
            await self._call_control.terminate_call(self.call_sid)

        self._closed_event.set()

    async def _close_peer(self, peer: TelephonyPeer, label: str) -> None:
        try:
            await peer.close()
        except Exception as exc:
            LOGGER.debug("[%s] Closing %s failed: %s", self.session_id, label, exc)

    async def _pump_telephony(self) -> None:
        try:
            async for raw in self._telephony.messages():
                await self.handle_telephony_message(raw)
                if self.closed:
                    return
        except Exception:
            LOGGER.exception("[%s] Media stream receive loop failed", self.session_id)
        finally:
            if not self.closed:
                await self.close("telephony-closed")

    async def _pump_ai(self) -> None:
        try:
            async for raw in self._ai.messages():
                await self.handle_ai_message(raw)
                if self.closed:
                    return
        except Exception:
            LOGGER.exception("[%s] Realtime receive loop failed", self.session_id)
        finally:
            # No more assistant audio is coming; there is nothing to drain.
            if not self.closed:
                await self.close("realtime-closed")

    async def _heartbeat(self) -> None:
        interval = self._settings.keepalive_interval_seconds
        while True:
            await asyncio.sleep(interval)
            async with self._lock:
                if self.closed:
                    return
                if self._state not in (LifecycleState.ACTIVE, LifecycleState.DRAINING):
                    continue
                try:
                    await self._ai.ping()
                except Exception as exc:
                    LOGGER.warning("[%s] Realtime ping failed: %s", self.session_id, exc)
                try:
                    await self._telephony.send_json(build_mark_message(self.stream_sid, "keepalive"))
                except Exception as exc:
                    LOGGER.warning("[%s] Media stream keepalive failed: %s", self.session_id, exc)

    def _on_hangup_transition(self, state: HangupState) -> None:
        if state is HangupState.DRAINING:
            self._advance(LifecycleState.DRAINING)

    def _advance(self, state: LifecycleState) -> None:
        if _LIFECYCLE_ORDER[state] > _LIFECYCLE_ORDER[self._state]:
            self._state = state

    def _is_closed(self) -> bool:
        return self._state is LifecycleState.CLOSED


class SessionRegistry:
    """Live sessions keyed by session id. Used for routing and health only."""

    def __init__(self) -> None:
        self._sessions: dict[str, CallSession] = {}

    def add(self, session: CallSession) -> None:
        self._sessions[session.session_id] = session

    def discard(self, session: CallSession) -> None:
        self._sessions.pop(session.session_id, None)

    def get(self, session_id: str) -> CallSession | None:
        return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)


GLOBAL_SESSION_REGISTRY = SessionRegistry()
