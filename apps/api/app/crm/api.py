from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.database import get_db
from app.crm.schemas import (
    ActionResult,
    AttachFieldValueRequest,
    CustomFieldDefinitionRead,
    CustomFieldDefinitionUpdate,
    CustomFieldDraft,
    DraftCommitRead,
    DraftCommitRequest,
    FieldOrderRead,
    FieldOrderUpdate,
    RecordCreate,
    RecordRead,
    SaveCustomFieldsRequest,
)
from app.crm.service import custom_field_service

custom_fields_router = APIRouter(prefix="/api/crm", tags=["crm.custom_fields"])
records_router = APIRouter(prefix="/api/crm", tags=["crm.records"])

STATUS_BY_CODE = {
    "duplicate_field": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "storage_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "invalid_value": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_module": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "conflict": status.HTTP_409_CONFLICT,
    "storage_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def result_error(request: Request, result: ActionResult, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=STATUS_BY_CODE.get(result.code or "", status.HTTP_400_BAD_REQUEST),
        code=code,
        message=result.message or "request failed",
        details={"reason": result.code},
    )


@custom_fields_router.get("/custom-fields", response_model=list[CustomFieldDefinitionRead])
def list_custom_fields(
    request: Request,
    module: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[CustomFieldDefinitionRead] | JSONResponse:
    result = custom_field_service.list_fields(db, module)
    if not result.success:
        return result_error(request, result, "crm_custom_fields_list_failed")
    return result.data


@custom_fields_router.post(
    "/custom-fields/{module}",
    response_model=CustomFieldDefinitionRead,
    status_code=status.HTTP_201_CREATED,
)
def register_custom_field(
    request: Request,
    module: str,
    dto: CustomFieldDraft,
    db: Session = Depends(get_db),
) -> CustomFieldDefinitionRead | JSONResponse:
    result = custom_field_service.register_field(
        db,
        module,
        dto.name,
        dto.type,
        dto.label,
        order=dto.order,
        is_visible=dto.is_visible,
    )
    if not result.success:
        return result_error(request, result, "crm_custom_fields_create_failed")
    return result.data


@custom_fields_router.post("/custom-fields/{module}/drafts", response_model=DraftCommitRead)
def commit_custom_field_drafts(
    request: Request,
    module: str,
    dto: DraftCommitRequest,
    db: Session = Depends(get_db),
) -> DraftCommitRead | JSONResponse:
    result = custom_field_service.commit_drafts(db, module, dto.drafts)
    if not result.success:
        return result_error(request, result, "crm_custom_fields_drafts_failed")
    return result.data


@custom_fields_router.patch("/custom-fields/definitions/{field_id}", response_model=CustomFieldDefinitionRead)
def update_custom_field(
    request: Request,
    field_id: uuid.UUID,
    dto: CustomFieldDefinitionUpdate,
    db: Session = Depends(get_db),
) -> CustomFieldDefinitionRead | JSONResponse:
    result = custom_field_service.update_field(db, field_id, dto)
    if not result.success:
        return result_error(request, result, "crm_custom_fields_update_failed")
    return result.data


@custom_fields_router.delete("/custom-fields/{module}/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_custom_field(
    request: Request,
    module: str,
    field_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> Response:
    result = custom_field_service.remove_field(db, module, field_id)
    if not result.success:
        return result_error(request, result, "crm_custom_fields_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@records_router.post("/records/{module}", response_model=RecordRead, status_code=status.HTTP_201_CREATED)
def create_record(
    request: Request,
    module: str,
    dto: RecordCreate,
    db: Session = Depends(get_db),
) -> RecordRead | JSONResponse:
    result = custom_field_service.create_record(db, module, dto)
    if not result.success:
        return result_error(request, result, "crm_record_create_failed")
    return result.data


@records_router.get("/records/{module}/{entity_id}", response_model=RecordRead)
def get_record(
    request: Request,
    module: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> RecordRead | JSONResponse:
    result = custom_field_service.get_record(db, module, entity_id)
    if not result.success:
        return result_error(request, result, "crm_record_get_failed")
    return result.data


@records_router.get("/records/{module}/{entity_id}/field-order", response_model=FieldOrderRead)
def get_field_order(
    request: Request,
    module: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> FieldOrderRead | JSONResponse:
    result = custom_field_service.get_field_order(db, module, entity_id)
    if not result.success:
        return result_error(request, result, "crm_field_order_get_failed")
    return result.data


@records_router.get("/records/{module}/{entity_id}/display-order", response_model=FieldOrderRead)
def get_display_order(
    request: Request,
    module: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> FieldOrderRead | JSONResponse:
    result = custom_field_service.get_display_order(db, module, entity_id)
    if not result.success:
        return result_error(request, result, "crm_field_order_get_failed")
    return result.data


@records_router.put("/records/{module}/{entity_id}/field-order", response_model=FieldOrderRead)
def reorder_fields(
    request: Request,
    module: str,
    entity_id: uuid.UUID,
    dto: FieldOrderUpdate,
    db: Session = Depends(get_db),
) -> FieldOrderRead | JSONResponse:
    result = custom_field_service.reorder_fields(db, module, entity_id, dto.field_order)
    if not result.success:
        return result_error(request, result, "crm_field_order_update_failed")
    return result.data


@records_router.post("/records/{module}/{entity_id}/custom-fields", response_model=RecordRead)
def attach_field_value(
    request: Request,
    module: str,
    entity_id: uuid.UUID,
    dto: AttachFieldValueRequest,
    db: Session = Depends(get_db),
) -> RecordRead | JSONResponse:
    result = custom_field_service.attach_field_value(
        db,
        module,
        entity_id,
        dto.field_name,
        dto.value,
        dto.label,
        position=dto.position,
    )
    if not result.success:
        return result_error(request, result, "crm_custom_field_value_attach_failed")
    return result.data


@records_router.put("/records/{module}/{entity_id}/custom-fields", response_model=RecordRead)
def save_custom_fields(
    request: Request,
    module: str,
    entity_id: uuid.UUID,
    dto: SaveCustomFieldsRequest,
    db: Session = Depends(get_db),
) -> RecordRead | JSONResponse:
    result = custom_field_service.save_custom_fields(db, module, entity_id, dto.custom_fields, dto.field_order)
    if not result.success:
        return result_error(request, result, "crm_custom_field_values_save_failed")
    return result.data
