from __future__ import annotations

import uuid


class CustomFieldError(Exception):
    """Base error for custom field and field order operations."""

    code = "custom_field_error"


class InvalidModuleError(CustomFieldError):
    code = "invalid_module"

    def __init__(self, module: str) -> None:
        self.module = module
        super().__init__(f"unknown module: {module}")


class DuplicateFieldError(CustomFieldError):
    """Raised when a definition with the same (module, name) already exists."""

    code = "duplicate_field"

    def __init__(self, module: str, name: str) -> None:
        self.module = module
        self.name = name
        super().__init__("Custom field with this name already exists for this module")


class NotFoundError(CustomFieldError):
    code = "not_found"

    def __init__(self, resource: str, identifier: uuid.UUID | str) -> None:
        self.resource = resource
        self.identifier = str(identifier)
        super().__init__(f"{resource} not found: {identifier}")


class FieldValueError(CustomFieldError):
    """Raised when a submitted value does not match the field's declared type."""

    code = "invalid_value"

    def __init__(self, field_name: str, message: str) -> None:
        self.field_name = field_name
        super().__init__(message)


class StorageUnavailableError(CustomFieldError):
    code = "storage_unavailable"

    def __init__(self, message: str = "storage unavailable") -> None:
        super().__init__(message)


class FieldOrderConflictError(CustomFieldError):
    """Raised when a concurrent writer created the side order row first."""

    code = "conflict"

    def __init__(self, module: str, entity_id: uuid.UUID | str) -> None:
        self.module = module
        self.entity_id = str(entity_id)
        super().__init__(f"field order for {module}/{entity_id} was written concurrently")


class StorageError(CustomFieldError):
    code = "storage_error"

    def __init__(self, message: str = "storage error") -> None:
        super().__init__(message)
