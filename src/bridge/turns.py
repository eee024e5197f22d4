from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from integrations.openai_realtime import append_message, commit_message, response_create_message
from telephony.pacer import OutputPacer

if TYPE_CHECKING:  # pragma: no cover
    from bridge.hangup import HangupCoordinator

LOGGER = logging.getLogger(__name__)

AISender = Callable[[dict[str, Any]], Awaitable[None]]


class TurnController:
    """Batches caller audio into turns and keeps at most one response in flight.

    Every inbound chunk is appended to the AI input buffer right away and
    pushes the commit deadline back by ``debounce_ms``. When the deadline
    fires the buffer is committed and, if nothing is in flight, a response is
    requested. A commit made while a response is running does not queue a
    second request; that audio is answered as part of the next turn.
    """

    def __init__(
        self,
        send_ai: AISender,
        pacer: OutputPacer,
        *,
        hangup: HangupCoordinator | None = None,
        debounce_ms: int = 250,
        closed: Callable[[], bool] | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._send_ai = send_ai
        self._pacer = pacer
        self._hangup = hangup
        self._debounce = debounce_ms / 1000
        self._closed = closed or (lambda: False)
        self._lock = lock or asyncio.Lock()

        self._in_flight = 0
        self._commit_handle: asyncio.TimerHandle | None = None
        self._commit_task: asyncio.Task | None = None
        self.commits = 0
        self.responses_requested = 0

    @property
    def awaiting_response(self) -> bool:
        return self._in_flight > 0

    @property
    def commit_pending(self) -> bool:
        return self._commit_handle is not None

    def attach_hangup(self, hangup: HangupCoordinator) -> None:
        self._hangup = hangup

    async def on_inbound_audio(self, payload_b64: str) -> None:
        if self._closed():
            return
        await self._send_ai(append_message(payload_b64))
        if not self._accepting_turns():
            return
        self._reset_commit_deadline()

    async def on_commit_deadline(self) -> None:
        if self._closed():
            return
        await self._send_ai(commit_message())
        self.commits += 1
        if not self._accepting_turns():
            return
        if self._in_flight:
            LOGGER.debug("Response already in flight; committed audio joins the next turn")
            return
        await self.request_response()

    async def request_response(self, instructions: str | None = None) -> None:
        """Ask for a response unconditionally (greeting, goodbye, or a new turn)."""

        self._in_flight += 1
        self.responses_requested += 1
        await self._send_ai(response_create_message(instructions))

    async def request_goodbye(self, instructions: str) -> None:
        # Terminal utterance: only sent once nothing else is in flight.
        await self.request_response(instructions)

    def on_response_audio_delta(self, audio: bytes) -> None:
        self._pacer.enqueue(audio)

    async def on_response_finished(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        await self._settle()

    async def on_response_error(self) -> None:
        # A failed response never finishes; clear everything so turns cannot deadlock.
        self._in_flight = 0
        await self._settle()

    def cancel(self) -> None:
        if self._commit_handle is not None:
            self._commit_handle.cancel()
            self._commit_handle = None
        task = self._commit_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _settle(self) -> None:
        if self._hangup is not None and not self._in_flight:
            await self._hangup.on_response_settled()

    def _accepting_turns(self) -> bool:
        return self._hangup is None or self._hangup.accepting_turns

    def _reset_commit_deadline(self) -> None:
        if self._commit_handle is not None:
            self._commit_handle.cancel()
        loop = asyncio.get_running_loop()
        self._commit_handle = loop.call_later(self._debounce, self._fire_commit_deadline)

    def _fire_commit_deadline(self) -> None:
        self._commit_handle = None
        self._commit_task = asyncio.get_running_loop().create_task(self._run_commit_deadline())

    async def _run_commit_deadline(self) -> None:
        async with self._lock:
            if self._closed():
                return
            try:
                await self.on_commit_deadline()
            except Exception:
                LOGGER.exception("Commit deadline handling failed")
