from __future__ import annotations

import pytest

from notifyhub.core.config import get_settings
from notifyhub.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and cached settings are process-global; start every test clean.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
