from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


# Components take a clock instead of calling datetime.now() so tests can pin time.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
