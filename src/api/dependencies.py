"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from bridge.errors import CallControlNotConfiguredError
from bridge.session import GLOBAL_SESSION_REGISTRY, AIPeer, SessionRegistry
from integrations.openai_realtime import build_realtime_connection
from integrations.twilio_client import TwilioCallControl, build_call_control

LOGGER = logging.getLogger(__name__)


def get_session_registry() -> SessionRegistry:
    return GLOBAL_SESSION_REGISTRY


def get_realtime_factory() -> Callable[[], AIPeer]:
    return build_realtime_connection


def get_call_control() -> TwilioCallControl:
    return build_call_control()


def get_optional_call_control() -> TwilioCallControl | None:
    """Call Control for out-of-band hangup; sessions still run without it."""

    try:
        return get_call_control()
    except CallControlNotConfiguredError as exc:
        LOGGER.debug("Call Control unavailable: %s", exc.detail)
        return None
