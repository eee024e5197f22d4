"""API-facing Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    active_sessions: int = 0


class TriggerCallRequest(BaseModel):
    to: str | None = Field(default=None, description="E.164 phone number, e.g. +385...")
    phone: str | None = Field(default=None, description="Alias for 'to'.")


class TriggerCallResponse(BaseModel):
    ok: bool = True
    call_sid: str
    status: str
    used: str = Field(description="'Twiml' for inline TwiML, 'Url' when TWIML_URL is configured.")
