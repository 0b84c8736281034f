from __future__ import annotations

import os
import tempfile

# Settings are read at import time, so the environment is pinned first.
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["LANGFUSE_PUBLIC_KEY"] = ""
os.environ["LANGFUSE_SECRET_KEY"] = ""
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="deepsearch-logs-"))
os.environ.setdefault("OPENROUTER_API_KEY", "test")

import pytest

from deepsearch.services import store as store_service
from deepsearch.services import telemetry


@pytest.fixture(autouse=True, scope="session")
def _telemetry():
    telemetry.init_telemetry()
    yield
    telemetry.shutdown()


@pytest.fixture(autouse=True)
def _fresh_store():
    store_service.reset_store()
    yield
    store_service.reset_store()
