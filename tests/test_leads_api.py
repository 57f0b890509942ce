from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_backend import events
from crm_backend.core.auth import ActorUser
from crm_backend.core.config import get_settings
from crm_backend.core.database import Base, get_db
from crm_backend.crm.api import get_current_user
from crm_backend.crm.models import CRMContact, CRMDeal, CRMLead, CRMLeadHistory
from crm_backend.crm.repositories import DealRepository
from crm_backend.main import app


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def organizations() -> dict[str, uuid.UUID]:
    return {"org1": uuid.uuid4(), "org2": uuid.uuid4()}


@pytest.fixture()
def client(
    db_session: Session,
    organizations: dict[str, uuid.UUID],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "user1": ActorUser(
            user_id=uuid.uuid4(),
            organization_id=organizations["org1"],
            role="admin",
            correlation_id="corr-lead",
        ),
        "user2": ActorUser(
            user_id=uuid.uuid4(),
            organization_id=organizations["org2"],
            role="admin",
            correlation_id="corr-lead",
        ),
    }
    state = {"current": "user1"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "first_name": "Jamie",
        "last_name": "Smith",
        "email": "jamie@example.com",
        "phone": "+1-555-0100",
        "lead_source": "referral",
        "lead_stage": "New",
        "budget": "5000+",
        "timeline": "immediate",
    }
    payload.update(overrides)
    return payload


def test_create_lead_scores_creates_contact_and_history(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/leads", json=_create_lead_payload())
    assert response.status_code == 201
    body = response.json()

    lead = body["lead"]
    contact = body["contact"]
    assert lead["score"] == 75
    assert lead["full_name"] == "Jamie Smith"
    assert lead["contact_id"] == contact["id"]
    assert contact["last_name"] == "Smith"
    assert contact["email"] == "jamie@example.com"
    assert body["deal"] is None

    history = db_session.scalars(
        select(CRMLeadHistory).where(CRMLeadHistory.lead_id == uuid.UUID(lead["id"]))
    ).all()
    assert [row.action for row in history] == ["created"]
    assert history[0].new_values["last_name"] == "Smith"
    assert history[0].changes["lead_source"] == "created"

    created_events = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert created_events
    assert created_events[-1]["payload"]["lead_id"] == lead["id"]


def test_create_lead_requires_last_name(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    missing = test_client.post("/api/crm/leads", json={"first_name": "Jamie"})
    assert missing.status_code == 422
    assert missing.json()["code"] == "validation_error"

    blank = test_client.post("/api/crm/leads", json=_create_lead_payload(last_name="   "))
    assert blank.status_code == 422
    assert blank.json()["details"]["missing_fields"] == ["last_name"]


def test_create_lead_rejects_unknown_source(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/leads", json=_create_lead_payload(lead_source="billboard"))
    assert response.status_code == 422


def test_create_qualified_lead_creates_deal(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/leads", json=_create_lead_payload(lead_stage="Qualified"))
    assert response.status_code == 201
    body = response.json()
    deal = body["deal"]
    assert deal is not None
    assert deal["lead_id"] == body["lead"]["id"]
    assert deal["contact_id"] == body["contact"]["id"]
    assert deal["stage"] == "Qualified"
    assert deal["deal_name"] == "Jamie Smith - Qualified Lead"
    assert deal["close_date"] == (date.today() + timedelta(days=30)).isoformat()
    assert deal["probability"] == 50
    assert db_session.scalar(select(func.count()).select_from(CRMDeal)) == 1


def test_update_lead_to_qualified_creates_exactly_one_deal(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    created = test_client.post("/api/crm/leads", json=_create_lead_payload())
    lead_id = created.json()["lead"]["id"]

    qualified = test_client.patch(f"/api/crm/leads/{lead_id}", json={"lead_stage": "Qualified"})
    assert qualified.status_code == 200
    deal = qualified.json()["deal"]
    assert deal is not None
    assert deal["close_date"] == (date.today() + timedelta(days=30)).isoformat()

    back = test_client.patch(f"/api/crm/leads/{lead_id}", json={"lead_stage": "Contacted"})
    assert back.status_code == 200
    again = test_client.patch(f"/api/crm/leads/{lead_id}", json={"lead_stage": "Qualified"})
    assert again.status_code == 200
    assert again.json()["deal"] is None

    same_stage = test_client.patch(f"/api/crm/leads/{lead_id}", json={"lead_stage": "Qualified", "notes": "hot"})
    assert same_stage.status_code == 200
    assert same_stage.json()["deal"] is None

    deals = db_session.scalars(select(CRMDeal).where(CRMDeal.lead_id == uuid.UUID(lead_id))).all()
    assert len(deals) == 1


def test_update_lead_rescores_and_ignores_null_for_required_fields(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    created = test_client.post("/api/crm/leads", json=_create_lead_payload())
    lead_id = created.json()["lead"]["id"]

    response = test_client.patch(
        f"/api/crm/leads/{lead_id}",
        json={"last_name": None, "budget": "under-100", "job_title": "Owner"},
    )
    assert response.status_code == 200
    lead = response.json()["lead"]
    assert lead["last_name"] == "Smith"
    assert lead["score"] == 20 + 5 + 25 + 15

    blank = test_client.patch(f"/api/crm/leads/{lead_id}", json={"last_name": "  "})
    assert blank.status_code == 422


def test_cascade_failure_keeps_lead_and_returns_without_deal(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client

    def failing_insert(self: DealRepository, entity: CRMDeal) -> CRMDeal:
        raise RuntimeError("deal table unavailable")

    monkeypatch.setattr(DealRepository, "insert", failing_insert)
    response = test_client.post("/api/crm/leads", json=_create_lead_payload(lead_stage="Qualified"))
    assert response.status_code == 201
    body = response.json()
    assert body["deal"] is None
    assert body["lead"]["lead_stage"] == "Qualified"

    assert db_session.scalar(select(func.count()).select_from(CRMLead)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMDeal)) == 0


def test_list_leads_scoped_by_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    first = test_client.post("/api/crm/leads", json=_create_lead_payload())
    assert first.status_code == 201

    set_actor("user2")
    second = test_client.post("/api/crm/leads", json=_create_lead_payload(last_name="Jones"))
    assert second.status_code == 201

    other = test_client.get(f"/api/crm/leads/{first.json()['lead']['id']}")
    assert other.status_code == 404
    assert other.json()["code"] == "not_found"

    set_actor("user1")
    listed = test_client.get("/api/crm/leads")
    assert listed.status_code == 200
    rows = listed.json()
    assert [row["last_name"] for row in rows] == ["Smith"]


def test_list_leads_filters_by_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    test_client.post("/api/crm/leads", json=_create_lead_payload(last_name="New"))
    test_client.post("/api/crm/leads", json=_create_lead_payload(last_name="Contacted", lead_stage="Contacted"))

    response = test_client.get("/api/crm/leads", params={"lead_stage": "Contacted"})
    assert response.status_code == 200
    assert [row["last_name"] for row in response.json()] == ["Contacted"]


def test_duplicate_email_allowed_unless_enforced(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    assert test_client.post("/api/crm/leads", json=_create_lead_payload()).status_code == 201
    assert test_client.post("/api/crm/leads", json=_create_lead_payload()).status_code == 201

    monkeypatch.setenv("ENFORCE_UNIQUE_LEAD_EMAIL", "true")
    get_settings.cache_clear()
    duplicate = test_client.post("/api/crm/leads", json=_create_lead_payload(email="JAMIE@example.com"))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"

    fresh = test_client.post("/api/crm/leads", json=_create_lead_payload(email="other@example.com"))
    assert fresh.status_code == 201
