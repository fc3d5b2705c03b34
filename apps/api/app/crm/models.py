from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMCustomFieldDefinition(Base):
    __tablename__ = "crm_custom_field_definition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    module: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    order: Mapped[int] = mapped_column("sort_order", Integer, nullable=False, default=0, server_default="0")
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "module",
            "name",
            name="uq_crm_custom_field_definition_module_name",
        ),
    )


class CRMRecord(Base):
    """A module-tagged business record (account, deal, ticket, ...).

    Only ``custom_fields`` and ``field_order`` are maintained by the custom field
    subsystem; ``data`` holds the module-specific attributes as submitted.
    """

    __tablename__ = "crm_record"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    module: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    custom_fields: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    field_order: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMFieldOrder(Base):
    __tablename__ = "crm_field_order"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    module: Mapped[str] = mapped_column(String(32), nullable=False)
    # Reference only: the side record may be written before the entity exists.
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    field_order: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_modified: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "module",
            "entity_id",
            name="uq_crm_field_order_module_entity",
        ),
    )


Index("ix_crm_custom_field_definition_module_order", CRMCustomFieldDefinition.module, CRMCustomFieldDefinition.order)
Index("ix_crm_record_module", CRMRecord.module)
