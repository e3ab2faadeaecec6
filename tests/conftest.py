"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

# Add tests directory to path so helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from helpers import ScriptedReceiver  # noqa: E402

from hookline.api.auth import reset_auth_singletons  # noqa: E402
from hookline.config import Settings  # noqa: E402
from hookline.service import WebhookService  # noqa: E402
from hookline.storage import WebhookStorage  # noqa: E402


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    """Settings for a throwaway SQLite database with fast, deterministic retries."""
    values: dict[str, object] = {
        "env": "test",
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'hookline.db'}",
        "allow_insecure_localhost": True,
        "http_timeout_seconds": 2.0,
        "max_attempts": 3,
        "retry_base_delay_seconds": 1.0,
        "retry_max_delay_seconds": 10.0,
        "retry_jitter_ratio": 0.0,
        "failure_threshold": 10,
        "log_format": "text",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def receiver() -> ScriptedReceiver:
    """Merchant receiver that answers 200 unless a test scripts otherwise."""
    return ScriptedReceiver(200)


@pytest_asyncio.fixture
async def storage(settings: Settings) -> AsyncIterator[WebhookStorage]:
    store = WebhookStorage(settings.database_url)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def service(settings: Settings, receiver: ScriptedReceiver) -> AsyncIterator[WebhookService]:
    svc = WebhookService.create(settings, transport=receiver.transport, worker_id="worker-test")
    await svc.initialize()
    yield svc
    await svc.close()


@pytest.fixture(autouse=True)
def _reset_auth() -> None:
    reset_auth_singletons()
