from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from app.crm.errors import DuplicateFieldError, FieldOrderConflictError, NotFoundError, StorageUnavailableError
from app.crm.models import CRMCustomFieldDefinition, CRMFieldOrder, CRMRecord, utcnow
from app.crm.schemas import (
    CustomFieldDefinitionCreate,
    CustomFieldDefinitionRead,
    CustomFieldDefinitionUpdate,
    RecordCreate,
)


logger = logging.getLogger("app.crm.custom_fields")

ENTITY_WRITABLE_ATTRIBUTES = {"name", "data", "custom_fields", "field_order"}


@contextmanager
def storage_guard(session: Session) -> Iterator[None]:
    """Roll back and translate driver connectivity failures into StorageUnavailableError."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        session.rollback()
        logger.error("storage.unavailable", extra={"error": str(exc)})
        raise StorageUnavailableError(str(getattr(exc, "orig", None) or exc)) from exc


class FieldDefinitionStore:
    def list_fields(self, session: Session, module: str | None = None) -> list[CRMCustomFieldDefinition]:
        stmt = select(CRMCustomFieldDefinition)
        if module is not None:
            stmt = stmt.where(CRMCustomFieldDefinition.module == module)
        stmt = stmt.order_by(CRMCustomFieldDefinition.order.asc(), CRMCustomFieldDefinition.name.asc())
        with storage_guard(session):
            return list(session.scalars(stmt).all())

    def get_field(self, session: Session, field_id: uuid.UUID) -> CRMCustomFieldDefinition | None:
        with storage_guard(session):
            return session.get(CRMCustomFieldDefinition, field_id)

    def find_by_name(self, session: Session, module: str, name: str) -> CRMCustomFieldDefinition | None:
        with storage_guard(session):
            return session.scalar(
                select(CRMCustomFieldDefinition).where(
                    and_(
                        CRMCustomFieldDefinition.module == module,
                        CRMCustomFieldDefinition.name == name,
                    )
                )
            )

    def definitions_by_name(self, session: Session, module: str) -> dict[str, CRMCustomFieldDefinition]:
        return {definition.name: definition for definition in self.list_fields(session, module)}

    def create_field(self, session: Session, dto: CustomFieldDefinitionCreate) -> CRMCustomFieldDefinition:
        # Fast path only; the unique constraint is what actually rejects concurrent duplicates.
        if self.find_by_name(session, dto.module, dto.name) is not None:
            raise DuplicateFieldError(dto.module, dto.name)

        now = utcnow()
        definition = CRMCustomFieldDefinition(
            module=dto.module,
            name=dto.name,
            label=(dto.label or "").strip() or dto.name,
            type=dto.type,
            order=dto.order,
            is_visible=dto.is_visible,
            created_at=now,
            updated_at=now,
        )
        with storage_guard(session):
            session.add(definition)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateFieldError(dto.module, dto.name)
            session.refresh(definition)
        return definition

    def update_field(
        self,
        session: Session,
        field_id: uuid.UUID,
        dto: CustomFieldDefinitionUpdate,
    ) -> CRMCustomFieldDefinition:
        definition = self.get_field(session, field_id)
        if definition is None:
            raise NotFoundError("custom field definition", field_id)

        payload = dto.model_dump(exclude_unset=True)
        for key in ["name", "label", "type", "order", "is_visible"]:
            if payload.get(key) is not None:
                setattr(definition, key, payload[key])
        definition.updated_at = utcnow()

        with storage_guard(session):
            session.add(definition)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateFieldError(definition.module, str(payload.get("name")))
            session.refresh(definition)
        return definition

    def delete_field(self, session: Session, field_id: uuid.UUID) -> CustomFieldDefinitionRead:
        definition = self.get_field(session, field_id)
        if definition is None:
            raise NotFoundError("custom field definition", field_id)
        snapshot = CustomFieldDefinitionRead.model_validate(definition)
        with storage_guard(session):
            session.delete(definition)
            session.commit()
        return snapshot


class EntityRepository:
    """Read/write access to one module-tagged record by id."""

    def find_one(self, session: Session, module: str, entity_id: uuid.UUID) -> CRMRecord | None:
        with storage_guard(session):
            return session.scalar(
                select(CRMRecord).where(and_(CRMRecord.module == module, CRMRecord.id == entity_id))
            )

    def insert_one(self, session: Session, module: str, dto: RecordCreate) -> CRMRecord:
        record = CRMRecord(module=module, name=dto.name, data=dict(dto.data))
        with storage_guard(session):
            session.add(record)
            session.commit()
            session.refresh(record)
        return record

    def update_one(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        fields: dict[str, Any],
        *,
        commit: bool = True,
    ) -> bool:
        unknown = set(fields) - ENTITY_WRITABLE_ATTRIBUTES
        if unknown:
            raise ValueError(f"unsupported record attributes: {', '.join(sorted(unknown))}")

        record = self.find_one(session, module, entity_id)
        if record is None:
            return False

        for key, value in fields.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        with storage_guard(session):
            session.add(record)
            if commit:
                session.commit()
            else:
                session.flush()
        return True


class FieldOrderRepository:
    def find(self, session: Session, module: str, entity_id: uuid.UUID) -> CRMFieldOrder | None:
        with storage_guard(session):
            return session.scalar(
                select(CRMFieldOrder).where(
                    and_(CRMFieldOrder.module == module, CRMFieldOrder.entity_id == entity_id)
                )
            )

    def upsert(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        field_order: list[str],
        *,
        commit: bool = True,
    ) -> CRMFieldOrder:
        row = self.find(session, module, entity_id)
        if row is None:
            row = CRMFieldOrder(module=module, entity_id=entity_id)
        row.field_order = list(field_order)
        row.last_modified = utcnow()
        with storage_guard(session):
            session.add(row)
            try:
                if commit:
                    session.commit()
                else:
                    session.flush()
            except IntegrityError:
                # Another writer inserted the (module, entity_id) row after our lookup.
                session.rollback()
                raise FieldOrderConflictError(module, entity_id)
        return row
