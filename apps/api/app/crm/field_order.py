from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy.orm import Session

from app.crm.errors import FieldOrderConflictError
from app.crm.repositories import EntityRepository, FieldOrderRepository, storage_guard
from app.metrics import observe_field_order_write


logger = logging.getLogger("app.crm.custom_fields")
MAX_WRITE_ATTEMPTS = 2


def _definition_sort_key(definition: Any) -> tuple[int, str]:
    return (getattr(definition, "order", 0) or 0, getattr(definition, "name", ""))


def resolve_display_order(
    explicit_order: Sequence[str],
    definitions: Iterable[Any],
    *,
    include_hidden: bool = False,
) -> list[str]:
    """Combine a stored field order with the module's field definitions.

    The explicit order is kept as-is, duplicates included. Definitions it does not
    mention are appended after it, sorted by their default ``order`` and then name.
    Without an explicit order the definitions alone decide the sequence.
    """
    candidates = [
        definition
        for definition in definitions
        if include_hidden or getattr(definition, "is_visible", True)
    ]
    known = set(explicit_order)
    appended = [definition.name for definition in sorted(candidates, key=_definition_sort_key) if definition.name not in known]
    return list(explicit_order) + appended


class FieldOrderTracker:
    def __init__(
        self,
        entities: EntityRepository | None = None,
        orders: FieldOrderRepository | None = None,
    ) -> None:
        self.entities = entities or EntityRepository()
        self.orders = orders or FieldOrderRepository()

    def get_order(self, session: Session, module: str, entity_id: uuid.UUID) -> list[str]:
        record = self.entities.find_one(session, module, entity_id)
        if record is not None and record.field_order:
            return list(record.field_order)

        side = self.orders.find(session, module, entity_id)
        if side is not None and side.field_order:
            return list(side.field_order)
        return []

    def set_order(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        order: Sequence[str],
        *,
        record_fields: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Persist ``order`` inline on the record and in the side table in one commit.

        ``record_fields`` are written to the record in the same transaction. When the
        record does not exist yet only the side table is written, which is how a
        default order is kept ahead of the record itself. If a concurrent first write
        creates the side row between lookup and insert, the transaction is staged
        again over that row once.
        """
        new_order = list(order)
        inline_fields = {**(record_fields or {}), "field_order": new_order}
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                inline_written = self._write_both(session, module, entity_id, inline_fields, new_order)
                break
            except FieldOrderConflictError:
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                logger.info(
                    "crm.field_order.retry",
                    extra={"crm_module": module, "entity_id": str(entity_id), "operation": "set_order"},
                )

        if inline_written:
            observe_field_order_write("inline")
        observe_field_order_write("side")
        logger.info(
            "crm.field_order.set",
            extra={
                "crm_module": module,
                "entity_id": str(entity_id),
                "operation": "set_order",
            },
        )
        return new_order

    def _write_both(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        inline_fields: dict[str, Any],
        new_order: list[str],
    ) -> bool:
        try:
            inline_written = self.entities.update_one(session, module, entity_id, inline_fields, commit=False)
            self.orders.upsert(session, module, entity_id, new_order, commit=False)
            with storage_guard(session):
                session.commit()
        except Exception:
            session.rollback()
            raise
        return inline_written
    def get_display_order(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        definitions: Iterable[Any],
    ) -> list[str]:
        return resolve_display_order(self.get_order(session, module, entity_id), definitions)
