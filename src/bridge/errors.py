"""Domain-specific exceptions for the call bridge.

These exceptions are safe to import from API layers without pulling in the
realtime client or the Twilio SDK.
"""

from __future__ import annotations


class BridgeError(Exception):
    status_code: int = 500
    default_detail: str = "Bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class CallControlNotConfiguredError(BridgeError):
    status_code = 400
    default_detail = "Missing TWILIO creds"


class InvalidPhoneNumberError(BridgeError):
    status_code = 400
    default_detail = "Missing 'to' in body"


class CallControlFailedError(BridgeError):
    status_code = 502
    default_detail = "Twilio call request failed."


class RealtimeConnectionError(BridgeError):
    status_code = 503
    default_detail = "Realtime AI connection failed."
