from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []

_UNTRACKED_KEYS = {"updated_at"}


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    old = before or {}
    new = after or {}
    keys = (set(old) | set(new)) - _UNTRACKED_KEYS
    return sorted(key for key in keys if old.get(key) != new.get(key))


def record(
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    *,
    module: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "entity_type": entity_type,
        "entity_id": entity_id,
        "module": module,
        "action": action,
        "before": before,
        "after": after,
        "changes": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id]
