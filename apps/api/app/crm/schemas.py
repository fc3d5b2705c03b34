from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


CustomFieldType = Literal["text", "number", "date"]
CustomFieldScalar = str | int | float | bool

FIELD_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _validate_field_name(value: str) -> str:
    cleaned = value.strip()
    if not FIELD_NAME_RE.match(cleaned):
        raise ValueError("name must start with a letter and contain only letters, digits and underscores")
    return cleaned


class CustomFieldDraft(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    type: CustomFieldType = "text"
    label: str | None = None
    order: int = 0
    is_visible: bool = True

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_field_name(value)


class CustomFieldDefinitionCreate(CustomFieldDraft):
    module: str = Field(min_length=1, max_length=32)


class CustomFieldDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    label: str | None = None
    type: CustomFieldType | None = None
    order: int | None = None
    is_visible: bool | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _validate_field_name(value)


class CustomFieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module: str
    name: str
    label: str
    type: CustomFieldType
    order: int
    is_visible: bool
    created_at: datetime
    updated_at: datetime


class DraftCommitRequest(BaseModel):
    drafts: list[CustomFieldDraft] = Field(default_factory=list)


class DraftCommitRead(BaseModel):
    created: list[CustomFieldDefinitionRead] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class CustomFieldInput(BaseModel):
    value: CustomFieldScalar
    label: str | None = None


class AttachFieldValueRequest(BaseModel):
    field_name: str = Field(min_length=1, max_length=128)
    value: CustomFieldScalar
    label: str | None = None
    position: int | None = Field(default=None, ge=0)

    @field_validator("field_name")
    @classmethod
    def _check_field_name(cls, value: str) -> str:
        return _validate_field_name(value)


class SaveCustomFieldsRequest(BaseModel):
    custom_fields: dict[str, CustomFieldInput] = Field(default_factory=dict)
    field_order: list[str] | None = None


class FieldOrderUpdate(BaseModel):
    field_order: list[str] = Field(default_factory=list)

    @field_validator("field_order")
    @classmethod
    def _check_entries(cls, value: list[str]) -> list[str]:
        if any(not isinstance(item, str) or not item.strip() for item in value):
            raise ValueError("field_order entries must be non-empty strings")
        return value


class FieldOrderRead(BaseModel):
    module: str
    entity_id: UUID
    field_order: list[str]


class CustomFieldValueRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: CustomFieldScalar | None
    order: int
    label: str
    last_modified: datetime | None = Field(default=None, alias="lastModified")


class RecordCreate(BaseModel):
    name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class RecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module: str
    name: str | None
    data: dict[str, Any]
    custom_fields: dict[str, CustomFieldValueRead] = Field(default_factory=dict)
    field_order: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _default_custom_fields(cls, value: Any) -> Any:
        return value or {}

    @field_validator("field_order", mode="before")
    @classmethod
    def _default_field_order(cls, value: Any) -> Any:
        return value or []


class ActionResult(BaseModel):
    """Outcome of a form-facing operation; failures carry a machine-readable code."""

    success: bool
    data: Any = None
    message: str | None = None
    code: str | None = None
