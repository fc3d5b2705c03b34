from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import date, datetime
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.errors import (
    CustomFieldError,
    DuplicateFieldError,
    FieldValueError,
    InvalidModuleError,
    NotFoundError,
    StorageError,
)
from app.crm.field_order import FieldOrderTracker
from app.crm.merge import merge_values, split_submission
from app.crm.models import CRMCustomFieldDefinition, utcnow
from app.crm.repositories import EntityRepository, FieldDefinitionStore, FieldOrderRepository
from app.crm.schemas import (
    CustomFieldDefinitionCreate,
    CustomFieldDefinitionRead,
    CustomFieldDefinitionUpdate,
    CustomFieldDraft,
    ActionResult,
    DraftCommitRead,
    FieldOrderRead,
    RecordCreate,
    RecordRead,
)
from app.metrics import observe_custom_field_operation


logger = logging.getLogger("app.crm.custom_fields")
tracer = trace.get_tracer("app.crm.custom_fields")

CRM_MODULES = frozenset(
    {
        "accounts",
        "contacts",
        "deals",
        "invoices",
        "quotes",
        "tickets",
        "projects",
        "activities",
        "inventory",
        "services",
    }
)


def validate_module(module: str) -> str:
    if module not in CRM_MODULES:
        raise InvalidModuleError(module)
    return module


def ensure_scalar(field_name: str, value: Any) -> Any:
    if not isinstance(value, (str, int, float, bool)):
        raise FieldValueError(field_name, f"{field_name} must be text, number or boolean")
    return value


def coerce_value(field_type: str, field_name: str, value: Any) -> Any:
    if field_type == "text":
        if not isinstance(value, str):
            raise FieldValueError(field_name, f"{field_name} must be text")
        return value

    if field_type == "number":
        if isinstance(value, str):
            raw = value.strip()
            try:
                return int(raw)
            except ValueError:
                pass
            try:
                number: int | float = float(raw)
            except ValueError:
                raise FieldValueError(field_name, f"{field_name} must be number")
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            number = value
        else:
            raise FieldValueError(field_name, f"{field_name} must be number")
        if isinstance(number, float) and not math.isfinite(number):
            raise FieldValueError(field_name, f"{field_name} must be a finite number")
        return number

    if field_type == "date":
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, str):
            raw = value.strip()
            try:
                return date.fromisoformat(raw).isoformat()
            except ValueError:
                pass
            try:
                return datetime.fromisoformat(raw).date().isoformat()
            except ValueError:
                raise FieldValueError(field_name, f"{field_name} must be ISO date")
        raise FieldValueError(field_name, f"{field_name} must be date")

    raise FieldValueError(field_name, f"unsupported custom field type: {field_type}")


class CustomFieldService:
    """Form-facing custom field operations.

    Every public method returns an ActionResult; domain errors raised by the store,
    tracker or record repository are reported through ``code`` instead of raised.
    """

    def __init__(
        self,
        store: FieldDefinitionStore | None = None,
        entities: EntityRepository | None = None,
        tracker: FieldOrderTracker | None = None,
    ) -> None:
        self.store = store or FieldDefinitionStore()
        self.entities = entities or EntityRepository()
        self.tracker = tracker or FieldOrderTracker(self.entities, FieldOrderRepository())

    def list_fields(self, session: Session, module: str | None = None) -> ActionResult:
        def _list() -> list[CustomFieldDefinitionRead]:
            if module is not None:
                validate_module(module)
            return [self._to_definition_read(item) for item in self.store.list_fields(session, module)]

        return self._execute(session, "list_fields", _list, module=module)

    def register_field(
        self,
        session: Session,
        module: str,
        name: str,
        type: str,
        label: str | None = None,
        *,
        order: int = 0,
        is_visible: bool = True,
    ) -> ActionResult:
        def _register() -> CustomFieldDefinitionRead:
            validate_module(module)
            try:
                dto = CustomFieldDefinitionCreate(
                    module=module,
                    name=name,
                    type=type,
                    label=label,
                    order=order,
                    is_visible=is_visible,
                )
            except ValidationError as exc:
                raise FieldValueError(name, _first_error(exc))
            return self._create_definition(session, dto)

        return self._execute(session, "register_field", _register, module=module)

    def update_field(self, session: Session, field_id: uuid.UUID, patch: CustomFieldDefinitionUpdate) -> ActionResult:
        def _update() -> CustomFieldDefinitionRead:
            before = self.store.get_field(session, field_id)
            before_payload = self._to_definition_read(before).model_dump(mode="json") if before is not None else None
            definition = self.store.update_field(session, field_id, patch)
            read_model = self._to_definition_read(definition)
            audit.record(
                entity_type="crm.custom_field_definition",
                entity_id=str(definition.id),
                action="update",
                before=before_payload,
                after=read_model.model_dump(mode="json"),
                module=definition.module,
            )
            self._publish("crm.custom_field.updated", definition.module, {"field_id": str(definition.id), "name": definition.name})
            return read_model

        return self._execute(session, "update_field", _update)

    def remove_field(self, session: Session, module: str, field_id: uuid.UUID) -> ActionResult:
        def _remove() -> CustomFieldDefinitionRead:
            validate_module(module)
            definition = self.store.get_field(session, field_id)
            if definition is None or definition.module != module:
                raise NotFoundError("custom field definition", field_id)
            # Stored values and orders on records are left untouched.
            removed = self.store.delete_field(session, field_id)
            audit.record(
                entity_type="crm.custom_field_definition",
                entity_id=str(removed.id),
                action="delete",
                before=removed.model_dump(mode="json"),
                after=None,
                module=module,
            )
            self._publish("crm.custom_field.deleted", module, {"field_id": str(removed.id), "name": removed.name})
            return removed

        return self._execute(session, "remove_field", _remove, module=module)

    def commit_drafts(self, session: Session, module: str, drafts: Sequence[CustomFieldDraft]) -> ActionResult:
        def _commit() -> DraftCommitRead:
            validate_module(module)
            result = DraftCommitRead()
            for draft in drafts:
                if self.store.find_by_name(session, module, draft.name) is not None:
                    result.skipped.append(draft.name)
                    continue
                dto = CustomFieldDefinitionCreate(module=module, **draft.model_dump())
                try:
                    result.created.append(self._create_definition(session, dto))
                except DuplicateFieldError:
                    result.skipped.append(draft.name)
            return result

        return self._execute(session, "commit_drafts", _commit, module=module)

    def get_field_order(self, session: Session, module: str, entity_id: uuid.UUID) -> ActionResult:
        def _get() -> FieldOrderRead:
            validate_module(module)
            order = self.tracker.get_order(session, module, entity_id)
            return FieldOrderRead(module=module, entity_id=entity_id, field_order=order)

        return self._execute(session, "get_field_order", _get, module=module, entity_id=entity_id)

    def get_display_order(self, session: Session, module: str, entity_id: uuid.UUID) -> ActionResult:
        def _get() -> FieldOrderRead:
            validate_module(module)
            definitions = self.store.list_fields(session, module)
            order = self.tracker.get_display_order(session, module, entity_id, definitions)
            return FieldOrderRead(module=module, entity_id=entity_id, field_order=order)

        return self._execute(session, "get_display_order", _get, module=module, entity_id=entity_id)

    def reorder_fields(self, session: Session, module: str, entity_id: uuid.UUID, new_order: Sequence[str]) -> ActionResult:
        def _reorder() -> FieldOrderRead:
            validate_module(module)
            requested = list(new_order)
            unknown = self._unknown_order_entries(session, module, entity_id, requested)
            if unknown:
                if get_settings().custom_fields_strict_reorder:
                    raise FieldValueError(unknown[0], f"unknown fields in order: {', '.join(unknown)}")
                logger.warning(
                    "crm.field_order.unknown_fields",
                    extra={"crm_module": module, "entity_id": str(entity_id), "field_name": ",".join(unknown)},
                )
            order = self.tracker.set_order(session, module, entity_id, requested)
            self._publish("crm.field_order.updated", module, {"entity_id": str(entity_id), "field_order": order})
            return FieldOrderRead(module=module, entity_id=entity_id, field_order=order)

        return self._execute(session, "reorder_fields", _reorder, module=module, entity_id=entity_id)

    def attach_field_value(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        field_name: str,
        value: Any,
        label: str | None,
        position: int | None = None,
    ) -> ActionResult:
        def _attach() -> RecordRead:
            validate_module(module)
            current_order = self.tracker.get_order(session, module, entity_id)
            record = self.entities.find_one(session, module, entity_id)
            if record is None:
                raise NotFoundError("record", entity_id)

            definition = self.store.find_by_name(session, module, field_name)
            stored_value = (
                coerce_value(definition.type, field_name, value)
                if definition is not None
                else ensure_scalar(field_name, value)
            )

            new_order = list(current_order)
            if position is not None:
                new_order = [name for name in new_order if name != field_name]
                new_order.insert(position, field_name)
            elif field_name not in new_order:
                new_order.append(field_name)

            existing: dict[str, Any] = dict(record.custom_fields or {})
            incoming: dict[str, Any] = {
                name: {"value": entry.get("value"), "label": entry.get("label")}
                for name, entry in existing.items()
                if isinstance(entry, Mapping)
            }
            incoming[field_name] = {"value": stored_value, "label": label}
            merge_order = new_order + [name for name in incoming if name not in new_order]
            merged = merge_values(existing, incoming, merge_order)
            for name, entry in merged.items():
                prior = existing.get(name)
                if name != field_name and isinstance(prior, Mapping) and prior.get("lastModified"):
                    entry["lastModified"] = prior["lastModified"]

            return self._persist_values(session, module, entity_id, merged, new_order)

        return self._execute(session, "attach_field_value", _attach, module=module, entity_id=entity_id)

    def save_custom_fields(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        values: Mapping[str, Any],
        field_order: Sequence[str] | None = None,
    ) -> ActionResult:
        def _save() -> RecordRead:
            validate_module(module)
            record = self.entities.find_one(session, module, entity_id)
            if record is None:
                raise NotFoundError("record", entity_id)

            definitions = self.store.definitions_by_name(session, module)
            incoming: dict[str, Any] = {}
            for name, item in values.items():
                raw_value, label = split_submission(item)
                definition = definitions.get(name)
                if raw_value is not None:
                    raw_value = (
                        coerce_value(definition.type, name, raw_value)
                        if definition is not None
                        else ensure_scalar(name, raw_value)
                    )
                incoming[name] = {"value": raw_value, "label": label}

            order = list(field_order) if field_order is not None else list(values.keys())
            merged = merge_values(record.custom_fields, incoming, order)
            return self._persist_values(session, module, entity_id, merged, order)

        return self._execute(session, "save_custom_fields", _save, module=module, entity_id=entity_id)

    def create_record(self, session: Session, module: str, dto: RecordCreate) -> ActionResult:
        def _create() -> RecordRead:
            validate_module(module)
            return RecordRead.model_validate(self.entities.insert_one(session, module, dto))

        return self._execute(session, "create_record", _create, module=module)

    def get_record(self, session: Session, module: str, entity_id: uuid.UUID) -> ActionResult:
        def _get() -> RecordRead:
            validate_module(module)
            record = self.entities.find_one(session, module, entity_id)
            if record is None:
                raise NotFoundError("record", entity_id)
            return RecordRead.model_validate(record)

        return self._execute(session, "get_record", _get, module=module, entity_id=entity_id)

    def _persist_values(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        merged: dict[str, Any],
        order: list[str],
    ) -> RecordRead:
        self.tracker.set_order(session, module, entity_id, order, record_fields={"custom_fields": merged})
        self._publish(
            "crm.custom_field_values.updated",
            module,
            {"entity_id": str(entity_id), "fields": sorted(merged), "field_order": order},
        )
        record = self.entities.find_one(session, module, entity_id)
        if record is None:
            raise NotFoundError("record", entity_id)
        return RecordRead.model_validate(record)

    def _create_definition(self, session: Session, dto: CustomFieldDefinitionCreate) -> CustomFieldDefinitionRead:
        definition = self.store.create_field(session, dto)
        read_model = self._to_definition_read(definition)
        audit.record(
            entity_type="crm.custom_field_definition",
            entity_id=str(definition.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            module=definition.module,
        )
        self._publish(
            "crm.custom_field.created",
            definition.module,
            {"field_id": str(definition.id), "name": definition.name, "type": definition.type},
        )
        return read_model

    def _unknown_order_entries(
        self,
        session: Session,
        module: str,
        entity_id: uuid.UUID,
        requested: list[str],
    ) -> list[str]:
        known = set(self.store.definitions_by_name(session, module))
        known.update(self.tracker.get_order(session, module, entity_id))
        return [name for name in dict.fromkeys(requested) if name not in known]

    def _execute(
        self,
        session: Session,
        operation: str,
        func: Callable[[], Any],
        *,
        module: str | None = None,
        entity_id: uuid.UUID | None = None,
    ) -> ActionResult:
        with tracer.start_as_current_span(f"crm.custom_fields.{operation}") as span:
            if module is not None:
                span.set_attribute("crm.module", module)
            if entity_id is not None:
                span.set_attribute("crm.entity_id", str(entity_id))
            try:
                try:
                    data = func()
                except SQLAlchemyError as exc:
                    session.rollback()
                    raise StorageError(str(getattr(exc, "orig", None) or exc)) from exc
            except CustomFieldError as exc:
                span.set_status(Status(StatusCode.ERROR, exc.code))
                observe_custom_field_operation(operation, exc.code)
                logger.warning(
                    "crm.custom_fields.failed",
                    extra={
                        "operation": operation,
                        "crm_module": module,
                        "entity_id": str(entity_id) if entity_id is not None else None,
                        "code": exc.code,
                        "error": str(exc),
                    },
                )
                return ActionResult(success=False, message=str(exc), code=exc.code)

            observe_custom_field_operation(operation, "success")
            return ActionResult(success=True, data=data)

    def _publish(self, event_type: str, module: str, payload: dict[str, Any]) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": utcnow().isoformat(),
                "module": module,
                "payload": payload,
            }
        )

    def _to_definition_read(self, definition: CRMCustomFieldDefinition) -> CustomFieldDefinitionRead:
        return CustomFieldDefinitionRead.model_validate(definition)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


custom_field_service = CustomFieldService()
