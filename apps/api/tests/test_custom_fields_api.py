from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMFieldOrder
from app.crm.repositories import FieldOrderRepository
from app.crm.service import custom_field_service
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
    audit.audit_entries.clear()
    events.published_events.clear()
    events.clear_subscribers()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    events.clear_subscribers()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_record(client: TestClient, module: str, name: str = "Record") -> dict:
    response = client.post(f"/api/crm/records/{module}", json={"name": name})
    assert response.status_code == 201
    return response.json()


def _register(client: TestClient, module: str, name: str, **body: object) -> dict:
    response = client.post(f"/api/crm/custom-fields/{module}", json={"name": name, **body})
    assert response.status_code == 201
    return response.json()


def test_register_custom_field_and_duplicate_conflict(client: TestClient) -> None:
    created = client.post("/api/crm/custom-fields/deals", json={"name": "region", "type": "text", "label": "Region"})
    assert created.status_code == 201
    body = created.json()
    assert body["module"] == "deals"
    assert body["name"] == "region"
    assert body["label"] == "Region"
    assert body["created_at"] == body["updated_at"]

    duplicate = client.post(
        "/api/crm/custom-fields/deals",
        json={"name": "region", "type": "number"},
        headers={"X-Correlation-Id": "dup-1"},
    )
    assert duplicate.status_code == 409
    payload = duplicate.json()
    assert payload["code"] == "crm_custom_fields_create_failed"
    assert payload["message"] == "Custom field with this name already exists for this module"
    assert payload["details"] == {"reason": "duplicate_field"}
    assert payload["correlation_id"] == "dup-1"


def test_register_custom_field_rejects_unknown_module(client: TestClient) -> None:
    response = client.post("/api/crm/custom-fields/widgets", json={"name": "size"})

    assert response.status_code == 422
    assert response.json()["details"] == {"reason": "invalid_module"}


def test_register_custom_field_rejects_invalid_name(client: TestClient) -> None:
    response = client.post("/api/crm/custom-fields/deals", json={"name": "has space"})

    assert response.status_code == 422


def test_list_custom_fields_filters_by_module(client: TestClient) -> None:
    _register(client, "tickets", "severity", order=2)
    _register(client, "tickets", "channel", order=1)
    _register(client, "quotes", "terms")

    tickets = client.get("/api/crm/custom-fields", params={"module": "tickets"})
    everything = client.get("/api/crm/custom-fields")

    assert tickets.status_code == 200
    assert [item["name"] for item in tickets.json()] == ["channel", "severity"]
    assert len(everything.json()) == 3


def test_attach_value_and_read_field_order(client: TestClient) -> None:
    _register(client, "projects", "budget_code", label="Budget code")
    project = _create_record(client, "projects")
    base = f"/api/crm/records/projects/{project['id']}"

    seeded = client.put(f"{base}/field-order", json={"field_order": ["name", "status"]})
    assert seeded.status_code == 200

    attached = client.post(
        f"{base}/custom-fields",
        json={"field_name": "budget_code", "value": "BC-42", "label": "Budget code", "position": 0},
    )
    assert attached.status_code == 200
    body = attached.json()
    assert body["field_order"] == ["budget_code", "name", "status"]
    entry = body["custom_fields"]["budget_code"]
    assert entry["value"] == "BC-42"
    assert entry["order"] == 0
    assert entry["label"] == "Budget code"
    assert entry["lastModified"]

    order = client.get(f"{base}/field-order")
    assert order.status_code == 200
    assert order.json() == {"module": "projects", "entity_id": project["id"], "field_order": ["budget_code", "name", "status"]}


def test_attach_value_rejects_mistyped_value(client: TestClient) -> None:
    _register(client, "invoices", "amount", type="number")
    invoice = _create_record(client, "invoices")

    response = client.post(
        f"/api/crm/records/invoices/{invoice['id']}/custom-fields",
        json={"field_name": "amount", "value": "plenty"},
    )

    assert response.status_code == 422
    assert response.json()["details"] == {"reason": "invalid_value"}


def test_attach_value_to_missing_record_is_not_found(client: TestClient) -> None:
    response = client.post(
        f"/api/crm/records/deals/{uuid.uuid4()}/custom-fields",
        json={"field_name": "region", "value": "EMEA"},
    )

    assert response.status_code == 404
    assert response.json()["code"] == "crm_custom_field_value_attach_failed"


def test_display_order_appends_registered_fields(client: TestClient) -> None:
    _register(client, "deals", "source", order=1)
    _register(client, "deals", "hidden_flag", is_visible=False)
    deal = _create_record(client, "deals")
    client.put(f"/api/crm/records/deals/{deal['id']}/field-order", json={"field_order": ["name"]})

    response = client.get(f"/api/crm/records/deals/{deal['id']}/display-order")

    assert response.status_code == 200
    assert response.json()["field_order"] == ["name", "source"]


def test_field_order_rejects_blank_entries(client: TestClient) -> None:
    deal = _create_record(client, "deals")

    response = client.put(f"/api/crm/records/deals/{deal['id']}/field-order", json={"field_order": ["name", " "]})

    assert response.status_code == 422


def test_delete_custom_field_twice(client: TestClient) -> None:
    field = _register(client, "accounts", "segment")
    account = _create_record(client, "accounts")
    client.post(
        f"/api/crm/records/accounts/{account['id']}/custom-fields",
        json={"field_name": "segment", "value": "SMB"},
    )

    first = client.delete(f"/api/crm/custom-fields/accounts/{field['id']}")
    second = client.delete(f"/api/crm/custom-fields/accounts/{field['id']}")

    assert first.status_code == 204
    assert second.status_code == 404
    assert second.json()["code"] == "crm_custom_fields_delete_failed"
    record = client.get(f"/api/crm/records/accounts/{account['id']}").json()
    assert record["custom_fields"]["segment"]["value"] == "SMB"


def test_save_custom_fields_replaces_submitted_set(client: TestClient) -> None:
    _register(client, "projects", "hours", type="number")
    project = _create_record(client, "projects")
    base = f"/api/crm/records/projects/{project['id']}/custom-fields"
    client.post(base, json={"field_name": "owner", "value": "Sam", "label": "Owner"})

    response = client.put(
        base,
        json={"custom_fields": {"hours": {"value": "8"}, "phase": {"value": "build", "label": "Phase"}}},
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body["custom_fields"]) == {"hours", "phase"}
    assert body["custom_fields"]["hours"]["value"] == 8
    assert body["field_order"] == ["hours", "phase"]


def test_commit_drafts_and_patch_definition(client: TestClient) -> None:
    _register(client, "contacts", "twitter")

    drafts = client.post(
        "/api/crm/custom-fields/contacts/drafts",
        json={"drafts": [{"name": "twitter"}, {"name": "birthday", "type": "date"}]},
    )
    assert drafts.status_code == 200
    body = drafts.json()
    assert [item["name"] for item in body["created"]] == ["birthday"]
    assert body["skipped"] == ["twitter"]

    field_id = body["created"][0]["id"]
    patched = client.patch(f"/api/crm/custom-fields/definitions/{field_id}", json={"label": "Birthday", "order": 4})
    assert patched.status_code == 200
    assert patched.json()["label"] == "Birthday"
    assert patched.json()["order"] == 4

    missing = client.patch(f"/api/crm/custom-fields/definitions/{uuid.uuid4()}", json={"label": "x"})
    assert missing.status_code == 404


def test_events_carry_request_correlation_id(client: TestClient) -> None:
    client.post("/api/crm/custom-fields/services", json={"name": "sla"}, headers={"X-Correlation-Id": "corr-event-1"})

    created = [item for item in events.published_events if item["event_type"] == "crm.custom_field.created"]
    assert created
    assert created[-1]["correlation_id"] == "corr-event-1"
    assert audit.audit_entries[-1]["correlation_id"] == "corr-event-1"


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class BlindOrderRepository(FieldOrderRepository):
    def find(self, session: Session, module: str, entity_id: uuid.UUID) -> CRMFieldOrder | None:
        return None


def test_field_order_write_race_returns_conflict_envelope(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    deal = _create_record(client, "deals")
    path = f"/api/crm/records/deals/{deal['id']}/field-order"
    assert client.put(path, json={"field_order": ["a"]}).status_code == 200

    monkeypatch.setattr(custom_field_service.tracker, "orders", BlindOrderRepository())
    response = client.put(path, json={"field_order": ["b"]}, headers={"X-Correlation-Id": "race-1"})

    assert response.status_code == 409
    body = response.json()
    assert body["details"] == {"reason": "conflict"}
    assert body["correlation_id"] == "race-1"


def test_event_subscriptions_end_with_app_lifespan(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    envelope = {"event_type": "crm.custom_field.created", "module": "deals", "payload": {}}

    with TestClient(app):
        events.publish(dict(envelope))
    events.publish(dict(envelope))

    assert len([record for record in caplog.records if record.getMessage() == "crm_event"]) == 1
