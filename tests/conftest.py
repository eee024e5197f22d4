from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture()
def make_settings():
    """Build Settings with short timers, ignoring any local .env file."""

    from config.settings import Settings

    def _make(**overrides):
        values = {
            "environment": "local",
            "lang": "hr",
            "farewell_locale": "hr",
            "farewell_extra_phrases": [],
            "commit_debounce_ms": 30,
            "drain_poll_ms": 5,
            "drain_grace_ms": 10,
            "keepalive_interval_seconds": 30.0,
            "start_beep_enabled": False,
            "greeting_instructions": "",
            "goodbye_instructions": "",
            "max_outbound_queue_bytes": 0,
            "sample_rate": 8000,
            "frame_size_bytes": 160,
            "frame_interval_ms": 20,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture(scope="session")
def app():
    # Must be set before importing main, which reads settings at import time.
    os.environ["ENVIRONMENT"] = "local"
    os.environ["PUBLIC_BASE_URL"] = "https://bridge.example.com"
    os.environ["START_BEEP_ENABLED"] = "false"
    os.environ.pop("TWIML_URL", None)

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    sys.modules.pop("main", None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
