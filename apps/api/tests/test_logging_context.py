from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.context import correlation_scope
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/records/deals/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/records/{module}/{entity_id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_failed_operation_logs_code_and_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    client.post("/api/crm/custom-fields/deals", json={"name": "region"})
    duplicate = client.post("/api/crm/custom-fields/deals", json={"name": "region"}, headers={"X-Correlation-Id": "dup-log-1"})
    assert duplicate.status_code == 409

    failures = [record for record in caplog.records if record.getMessage() == "crm.custom_fields.failed"]
    assert any(
        getattr(record, "code", None) == "duplicate_field"
        and getattr(record, "operation", None) == "register_field"
        and getattr(record, "crm_module", None) == "deals"
        and getattr(record, "correlation_id", None) == "dup-log-1"
        for record in failures
    )


def test_json_formatter_emits_known_fields() -> None:
    with correlation_scope("fmt-1"):
        record = logging.getLogger("app.crm.custom_fields").makeRecord(
            "app.crm.custom_fields",
            logging.INFO,
            __file__,
            1,
            "crm.field_order.set",
            (),
            None,
            extra={"crm_module": "deals", "entity_id": "e-1", "operation": "set_order", "secret": "hidden"},
        )
        payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "crm.field_order.set"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"module": "deals", "entity_id": "e-1", "operation": "set_order"}
