from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bin_agent import build_info  # noqa: E402
from bin_agent.config import get_settings  # noqa: E402
from tests.support import FakeBroker  # noqa: E402

build_info.BUILD_FLAVOR = os.environ.get("BIN_AGENT_TEST_BUILD_FLAVOR", "test")


@pytest.fixture
def fake_broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("BIN_AGENT_") and key != "BIN_AGENT_TEST_BUILD_FLAVOR":
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
