from __future__ import annotations

import logging
import sys

from notifyhub.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; workers and the API share one format.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # arq logs every job at INFO; keep it one level quieter than ours.
    logging.getLogger("arq").setLevel(max(logging.getLevelName(resolved), logging.WARNING))
    _configured = True


def format_fields(fields: dict) -> str:
    # Render structured fields as stable key=value pairs for log lines.
    parts = []
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            continue
        text = str(value)
        if " " in text:
            text = f'"{text}"'
        parts.append(f"{key}={text}")
    return " ".join(parts)
