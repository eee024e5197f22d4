"""Call Control: originate and force-terminate call legs through the Twilio REST API."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from xml.sax.saxutils import quoteattr

from bridge.errors import CallControlFailedError, CallControlNotConfiguredError, InvalidPhoneNumberError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    public_base_url: str | None = None
    twiml_url: str | None = None
    machine_detection: str | None = None


@dataclass(frozen=True)
class PlacedCall:
    call_sid: str
    status: str
    used: str


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise CallControlNotConfiguredError("Missing TWILIO creds")
    if not settings.twilio_from_number:
        raise CallControlNotConfiguredError("Missing TWILIO_FROM_NUMBER (E.164)")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url.rstrip("/") if settings.public_base_url else None,
        twiml_url=settings.twiml_url,
        machine_detection=(settings.twilio_machine_detection or "").strip() or None,
    )


def build_twilio_client(cfg: TwilioConfig | None = None):
    from twilio.rest import Client

    cfg = cfg or get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


def normalize_phone_number(raw: str | None) -> str:
    """Reduce user input to E.164-ish form: digits with a leading plus."""

    number = re.sub(r"[^\d+]", "", str(raw or "").strip())
    if not number.strip("+"):
        raise InvalidPhoneNumberError()
    if not number.startswith("+"):
        number = "+" + number
    return number


def stream_twiml(stream_url: str) -> str:
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)}/>"
        "</Connect>"
        "</Response>"
    )


class TwilioCallControl:
    """Async facade over the blocking Twilio SDK."""

    def __init__(self, client, cfg: TwilioConfig) -> None:
        self._client = client
        self._cfg = cfg

    @property
    def from_number(self) -> str:
        return self._cfg.from_number

    async def place_call(self, to: str, from_: str, stream_url: str) -> PlacedCall:
        params: dict[str, object] = {"to": to, "from_": from_}
        if self._cfg.twiml_url:
            used = "Url"
            params["url"] = self._cfg.twiml_url
        else:
            used = "Twiml"
            params["twiml"] = stream_twiml(stream_url)
        if self._cfg.machine_detection:
            params["machine_detection"] = self._cfg.machine_detection
        if self._cfg.public_base_url:
            params["status_callback"] = f"{self._cfg.public_base_url}/api/twilio/status"
            params["status_callback_event"] = STATUS_CALLBACK_EVENTS

        LOGGER.info("Creating call to=%s used=%s stream=%s", to, used, stream_url)
        try:
            call = await asyncio.to_thread(self._client.calls.create, **params)
        except Exception as exc:
            LOGGER.exception("Twilio call creation failed")
            raise CallControlFailedError(str(exc)) from exc

        return PlacedCall(call_sid=str(call.sid), status=str(getattr(call, "status", "") or ""), used=used)

    async def terminate_call(self, call_sid: str) -> bool:
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, status="completed")
        except Exception as exc:
            LOGGER.warning("Twilio hangup failed for %s: %s", call_sid, exc)
            return False
        LOGGER.info("Twilio hangup OK call=%s", call_sid)
        return True


def build_call_control() -> TwilioCallControl:
    cfg = get_twilio_config()
    return TwilioCallControl(build_twilio_client(cfg), cfg)
