"""Entry point for the Twilio to Realtime voice AI bridge service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from bridge.errors import BridgeError
from config.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Realtime Voice Bridge",
    description="Bridges Twilio Media Streams to a realtime voice AI, with graceful hangup.",
)
app.include_router(api_router, prefix="/api")
app.include_router(twilio_router, prefix="/api")


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.detail})


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "ok"
