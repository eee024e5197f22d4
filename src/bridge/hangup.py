"""End-of-call detection and the drain-then-terminate sequence."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from bridge.farewell import FarewellMatcher
from telephony.pacer import OutputPacer

LOGGER = logging.getLogger(__name__)

REASON_TOOL = "tool-initiated"
REASON_CALLER = "caller-farewell"
REASON_ASSISTANT = "assistant-farewell"
REASON_TRANSPORT = "transport-stop"


class HangupState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    DRAINING = "draining"
    TERMINATED = "terminated"


class HangupSource(str, Enum):
    TOOL = "tool"
    CALLER = "caller"
    ASSISTANT = "assistant"
    TRANSPORT = "transport"


def reason_from_tool_arguments(arguments: str | None) -> str:
    """Best-effort reason from the tool's JSON arguments; never raises."""

    if not arguments:
        return REASON_TOOL
    try:
        payload = json.loads(arguments)
    except ValueError:
        return REASON_TOOL
    if isinstance(payload, dict):
        reason = payload.get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip()
    return REASON_TOOL


class HangupCoordinator:
    """State machine IDLE -> REQUESTED -> DRAINING -> TERMINATED.

    Triggers after the first one are no-ops, except that a tool invocation
    replaces the reason recorded by a phrase match. Termination waits for the
    pacer queue to be empty, then a grace period, then checks again, and a
    final time under the lock. An optional goodbye response is requested
    only once no other response is in flight.

    Trigger methods are called by the session with its lock held; the drain
    task takes ``lock`` itself before running ``terminate``.
    """

    def __init__(
        self,
        pacer: OutputPacer,
        terminate: Callable[[str], Awaitable[None]],
        *,
        matcher: FarewellMatcher | None = None,
        response_in_flight: Callable[[], bool] | None = None,
        request_goodbye: Callable[[str], Awaitable[None]] | None = None,
        goodbye_instructions: str | None = None,
        drain_poll_ms: int = 30,
        drain_grace_ms: int = 120,
        closed: Callable[[], bool] | None = None,
        lock: asyncio.Lock | None = None,
        on_transition: Callable[[HangupState], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._pacer = pacer
        self._terminate = terminate
        self._matcher = matcher or FarewellMatcher()
        self._response_in_flight = response_in_flight or (lambda: False)
        self._request_goodbye = request_goodbye
        self._goodbye_instructions = goodbye_instructions
        self._poll = drain_poll_ms / 1000
        self._grace = drain_grace_ms / 1000
        self._closed = closed or (lambda: False)
        self._lock = lock or asyncio.Lock()
        self._on_transition = on_transition
        self._sleep = sleep or asyncio.sleep

        self._state = HangupState.IDLE
        self._reason = ""
        self._source: HangupSource | None = None
        self._drain_task: asyncio.Task | None = None
        self._goodbye_pending = False
        self._terminated = asyncio.Event()
        self.goodbye_requests = 0

    @property
    def state(self) -> HangupState:
        return self._state

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def source(self) -> HangupSource | None:
        return self._source

    @property
    def accepting_turns(self) -> bool:
        return self._state is HangupState.IDLE

    async def on_caller_transcript(self, text: str) -> bool:
        phrase = self._matcher.find(text)
        if phrase is None:
            return False
        LOGGER.debug("Farewell %r detected in caller speech", phrase)
        return await self.request(REASON_CALLER, HangupSource.CALLER)

    async def on_assistant_transcript(self, text: str) -> bool:
        phrase = self._matcher.find(text)
        if phrase is None:
            return False
        LOGGER.debug("Farewell %r detected in assistant speech", phrase)
        return await self.request(REASON_ASSISTANT, HangupSource.ASSISTANT)

    async def on_tool_call(self, arguments: str | None) -> bool:
        return await self.request(reason_from_tool_arguments(arguments), HangupSource.TOOL)

    async def request(self, reason: str, source: HangupSource) -> bool:
        """Enter REQUESTED. Returns False if a hangup was already under way."""

        if self._closed():
            return False

        if self._state is not HangupState.IDLE:
            if (
                source is HangupSource.TOOL
                and self._source is not HangupSource.TOOL
                and self._state is not HangupState.TERMINATED
            ):
                LOGGER.info("Hangup reason %r superseded by tool request %r", self._reason, reason)
                self._reason = reason
                self._source = source
            return False

        self._reason = reason
        self._source = source
        self._set_state(HangupState.REQUESTED)
        LOGGER.info("Hangup requested: reason=%s source=%s", reason, source.value)

        self._goodbye_pending = bool(self._goodbye_instructions and self._request_goodbye is not None)
        await self._advance_requested()
        return True

    async def on_response_settled(self) -> None:
        """The in-flight response finished or failed."""

        if self._state is HangupState.REQUESTED:
            await self._advance_requested()

    def abort(self, reason: str = REASON_TRANSPORT) -> None:
        """Mark the call over without draining; the transport is already gone."""

        if self._state is HangupState.TERMINATED:
            return
        if self._state is HangupState.IDLE:
            self._reason = reason
            self._source = HangupSource.TRANSPORT
        self.cancel()
        self._set_state(HangupState.TERMINATED)
        self._terminated.set()

    def cancel(self) -> None:
        task = self._drain_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    async def _advance_requested(self) -> None:
        # The goodbye waits for the current response: the AI rejects a second active one.
        if self._response_in_flight():
            return
        if self._goodbye_pending:
            self._goodbye_pending = False
            self.goodbye_requests += 1
            await self._request_goodbye(self._goodbye_instructions)
            if self._response_in_flight():
                return
        self._begin_draining()

    def _begin_draining(self) -> None:
        self._set_state(HangupState.DRAINING)
        LOGGER.info("Hangup draining: %s bytes of outbound audio queued", self._pacer.queued_bytes)
        self._drain_task = asyncio.get_running_loop().create_task(self._drain_then_terminate())

    async def _wait_until_drained(self) -> bool:
        """Poll until the pacer queue stays empty through the grace period."""

        while True:
            await self._sleep(self._poll)
            if self._closed():
                return False
            if not self._pacer.is_empty:
                continue
            # Let the transport flush the last frame before cutting the call.
            await self._sleep(self._grace)
            if self._closed():
                return False
            if self._pacer.is_empty:
                return True

    async def _drain_then_terminate(self) -> None:
        while await self._wait_until_drained():
            async with self._lock:
                if self._closed() or self._state is not HangupState.DRAINING:
                    return
                if not self._pacer.is_empty:
                    # Audio was queued while we waited for the lock.
                    continue
                self._set_state(HangupState.TERMINATED)
                LOGGER.info("Hangup terminating call: reason=%s", self._reason)
                try:
                    await self._terminate(self._reason)
                except Exception:
                    LOGGER.exception("Terminate sequence failed")
                finally:
                    self._terminated.set()
                return

    def _set_state(self, state: HangupState) -> None:
        self._state = state
        if self._on_transition is not None:
            self._on_transition(state)
