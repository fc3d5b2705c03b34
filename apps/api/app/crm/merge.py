from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from app.crm.models import utcnow


CustomFieldsMap = dict[str, dict[str, Any]]


def split_submission(item: Any) -> tuple[Any, str | None]:
    if isinstance(item, BaseModel):
        item = item.model_dump()
    if isinstance(item, Mapping) and "value" in item:
        label = item.get("label")
        return item["value"], label if isinstance(label, str) and label else None
    return item, None


def merge_values(
    existing: Mapping[str, Mapping[str, Any]] | None,
    incoming: Mapping[str, Any],
    order: Sequence[str] | None = None,
    *,
    now: datetime | None = None,
) -> CustomFieldsMap:
    """Rebuild a record's custom field map from a form submission.

    The result holds exactly the submitted fields (replace-by-submission): names only
    present in ``existing`` are dropped. Each entry's ``order`` is its index in
    ``order``, or in the submission's key order when no order is given. Labels come
    from the submission, then from the existing entry, then the field name. Values
    are stored as submitted.
    """
    previous = existing or {}
    timestamp = (now or utcnow()).isoformat()
    sequence = list(order) if order is not None else list(incoming.keys())

    merged: CustomFieldsMap = {}
    for index, name in enumerate(sequence):
        if name not in incoming:
            continue
        value, label = split_submission(incoming[name])
        if value is None:
            continue
        prior = previous.get(name) or {}
        merged[name] = {
            "value": value,
            "order": index,
            "label": label or prior.get("label") or name,
            "lastModified": timestamp,
        }
    return merged
