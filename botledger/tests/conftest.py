from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any botledger module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="botledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'botledger.db')}"
os.environ["AGENT_PROVIDER"] = "fake"
os.environ.pop("AGENT_WEBHOOK_SECRET", None)
os.environ.pop("LIFECYCLE_WEBHOOK_URL", None)
os.environ.pop("WEBHOOK_SIGNING_SECRET", None)

import pytest  # noqa: E402

from botledger.core.config import get_settings  # noqa: E402
from botledger.domain.models import Base  # noqa: E402
from botledger.persistence.db import engine  # noqa: E402
from botledger.providers.agent.factory import reset_agent_client  # noqa: E402
from botledger.services.quota import reset_quota_service  # noqa: E402
from botledger.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_cached_services() -> None:
    # Clear settings and service singletons between tests to avoid env leakage.
    yield
    get_settings.cache_clear()
    reset_quota_service()
    reset_agent_client()
    reset_telemetry()
