from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point the engine at a throwaway sqlite file before any tenantplane module builds it.
_TEST_DB = Path(tempfile.gettempdir()) / f"tenantplane-test-{os.getpid()}.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("EVENT_TRANSPORT", "inline")

import pytest

from tenantplane.core.config import get_settings
from tenantplane.domain.models import Base
from tenantplane.persistence.db import engine
from tenantplane.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Every test starts from empty tables and fresh counters.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_telemetry()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    yield
    get_settings.cache_clear()
