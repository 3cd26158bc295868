"""Shared helpers for model columns that hold JSON encoded values."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime, as stored in the database."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def load_json(text: str | None, default: Any = None) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default
