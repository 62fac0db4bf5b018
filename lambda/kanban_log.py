from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

SCHEMA_VERSION = os.environ.get("KANBAN_SCHEMA_VERSION", "2026-10-01")


def now_iso() -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def emit(event: dict[str, Any]) -> None:
    print(json.dumps(event, separators=(",", ":"), sort_keys=True, default=str))


def log_event(name: str, **fields: Any) -> dict[str, Any]:
    event: dict[str, Any] = {
        "event": name,
        "schema_version": SCHEMA_VERSION,
        "ts": now_iso(),
    }
    event.update(fields)
    emit(event)
    return event
