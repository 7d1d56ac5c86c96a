"""Structured audit trail: one JSON object per security-relevant event."""

import json
import logging
import time
from typing import Any

AUDIT_LOGGER_NAME = "hatena-audit"

audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


def audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


def redact(value: str | None, keep: int = 6) -> str:
    """Shorten a secret-ish value for logs."""
    if not value:
        return "none"
    return value[:keep] + "..." if len(value) > keep else value
