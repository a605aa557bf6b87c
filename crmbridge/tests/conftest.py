from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point the engine at a throwaway SQLite file before any crmbridge module builds it.
_TEST_DB = Path(tempfile.gettempdir()) / f"crmbridge-test-{os.getpid()}.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ.setdefault("PLATFORM_CLIENT_ID", "client-id")
os.environ.setdefault("PLATFORM_CLIENT_SECRET", "client-secret")
os.environ.setdefault("PLATFORM_INTEGRATION_ID", "app-1")
os.environ.setdefault("EXT_RETRY_MAX_ATTEMPTS", "1")
os.environ.setdefault("EXT_RETRY_BACKOFF_MS", "1")
os.environ.setdefault("INSTALL_DISCOVERY_RETRY_DELAY_MS", "0")

import httpx  # noqa: E402
import pytest  # noqa: E402

from crmbridge.core.config import get_settings  # noqa: E402
from crmbridge.domain.models import Base  # noqa: E402
from crmbridge.persistence.db import engine  # noqa: E402
from crmbridge.services.outcomes import clear_soft_failures  # noqa: E402
from crmbridge.services.platform.client import PlatformClient  # noqa: E402
from crmbridge.services.resilience import RetryPolicy  # noqa: E402
from crmbridge.services.telemetry import reset_telemetry  # noqa: E402
from crmbridge.tests.utils.fakes import FakePlatform, RecordingBackend  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables on a fresh connection pool.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_observability() -> None:
    reset_telemetry()
    clear_soft_failures()
    yield
    # Tests that patch the environment must not leak cached settings.
    get_settings.cache_clear()


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
async def platform_client(fake_platform: FakePlatform) -> PlatformClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_platform.handler))
    client = PlatformClient(
        settings=get_settings(),
        http_client=http_client,
        retry_policy=RetryPolicy(timeout_ms=5000, max_attempts=1, backoff_ms=1),
    )
    yield client
    await http_client.aclose()


@pytest.fixture
def queue_backend() -> RecordingBackend:
    return RecordingBackend()
