"""
Pytest configuration and fixtures for diligence engine tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Generator
from unittest.mock import patch

import pytest

from dde.config import Settings, clear_settings_cache
from dde.facts.store import FactStore
from dde.persistence.session_store import SessionStore
from dde.types import Subject


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "DATA_DIR": ".test_dde",
        "MAX_BUDGET_USD": "25.0",
        "AGENT_TIMEOUT_SECONDS": "5",
        "MAX_CONCURRENT_AGENTS": "4",
        "CHECKPOINT_RETENTION": "3",
        "CACHE_TTL_HOURS": "24",
        "DEFAULT_MODE": "full",
        "FAIL_FAST_ON_CRITICAL": "false",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration.

    Uses temp_dir for the data directory.
    """
    with patch.dict(os.environ, {"DATA_DIR": str(temp_dir / "data")}):
        clear_settings_cache()
        from dde.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
async def fact_store(temp_dir: Path) -> AsyncGenerator[FactStore, None]:
    """Create an initialized fact store for testing."""
    store = FactStore(temp_dir / "facts.db")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
async def session_store(temp_dir: Path) -> AsyncGenerator[SessionStore, None]:
    """Create an initialized session store for testing."""
    store = SessionStore(temp_dir / "sessions.db")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def subject() -> Subject:
    """Provide a deal to analyze."""
    return Subject(
        id="deal_acme",
        name="Acme Robotics",
        attributes={"sector": "robotics", "stage": "seed", "ask_eur": 1_500_000},
    )


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
