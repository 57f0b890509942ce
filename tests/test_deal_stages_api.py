from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_backend import events
from crm_backend.core.auth import ActorUser
from crm_backend.core.database import Base, get_db
from crm_backend.crm.api import get_current_user
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


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    organization_id = uuid.uuid4()
    actors = {
        "admin": ActorUser(user_id=uuid.uuid4(), organization_id=organization_id, role="admin"),
        "member": ActorUser(user_id=uuid.uuid4(), organization_id=organization_id, role="user"),
        "other_admin": ActorUser(user_id=uuid.uuid4(), organization_id=uuid.uuid4(), role="admin"),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    events.published_events.clear()
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _defaults(stages: list[dict]) -> list[str]:
    return [stage["name"] for stage in stages if stage["is_default"]]


def test_initialize_creates_default_pipeline_once(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/deal-stages/initialize")
    assert response.status_code == 201
    stages = response.json()
    assert [(stage["name"], stage["order"], stage["probability"]) for stage in stages] == [
        ("Qualified", 1, 25),
        ("Proposal", 2, 50),
        ("Negotiation", 3, 75),
        ("Closed Won", 4, 100),
        ("Closed Lost", 5, 0),
    ]
    assert _defaults(stages) == ["Qualified"]

    again = test_client.post("/api/crm/deal-stages/initialize")
    assert again.status_code == 409


def test_only_one_default_stage_per_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    test_client.post("/api/crm/deal-stages/initialize")

    created = test_client.post(
        "/api/crm/deal-stages",
        json={"name": "Discovery", "probability": 10, "is_default": True},
    )
    assert created.status_code == 201
    assert created.json()["order"] == 6

    stages = test_client.get("/api/crm/deal-stages").json()
    assert _defaults(stages) == ["Discovery"]

    proposal = next(stage for stage in stages if stage["name"] == "Proposal")
    updated = test_client.put(f"/api/crm/deal-stages/{proposal['id']}", json={"is_default": True, "color": "#000000"})
    assert updated.status_code == 200
    assert updated.json()["color"] == "#000000"

    stages = test_client.get("/api/crm/deal-stages").json()
    assert _defaults(stages) == ["Proposal"]


def test_reorder_stages(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    stages = test_client.post("/api/crm/deal-stages/initialize").json()
    by_name = {stage["name"]: stage["id"] for stage in stages}

    response = test_client.put(
        "/api/crm/deal-stages/reorder",
        json={
            "stage_orders": [
                {"id": by_name["Negotiation"], "order": 1},
                {"id": by_name["Qualified"], "order": 3},
            ]
        },
    )
    assert response.status_code == 200
    assert [stage["name"] for stage in response.json()][:3] == ["Negotiation", "Proposal", "Qualified"]


def test_stage_in_use_cannot_be_deleted(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    custom = test_client.post("/api/crm/deal-stages", json={"name": "Pilot", "probability": 60}).json()
    contact = test_client.post("/api/crm/contacts", json={"last_name": "Lamarr"}).json()
    deal = test_client.post(
        "/api/crm/deals",
        json={
            "first_name": "Hedy",
            "last_name": "Lamarr",
            "stage": "Pilot",
            "close_date": date.today().isoformat(),
            "amount": 100,
            "contact_id": contact["id"],
        },
    )
    assert deal.status_code == 201
    assert deal.json()["probability"] == 60

    blocked = test_client.delete(f"/api/crm/deal-stages/{custom['id']}")
    assert blocked.status_code == 409
    assert blocked.json()["details"] == {"deals": 1}

    assert test_client.delete(f"/api/crm/deals/{deal.json()['id']}").status_code == 200
    deleted = test_client.delete(f"/api/crm/deal-stages/{custom['id']}")
    assert deleted.status_code == 204
    assert any(item["event_type"] == "crm.deal_stage.deleted" for item in events.published_events)


def test_stage_in_use_cannot_be_renamed(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    custom = test_client.post("/api/crm/deal-stages", json={"name": "Pilot", "probability": 60}).json()
    contact = test_client.post("/api/crm/contacts", json={"last_name": "Lamarr"}).json()
    deal = test_client.post(
        "/api/crm/deals",
        json={
            "first_name": "Hedy",
            "last_name": "Lamarr",
            "stage": "Pilot",
            "close_date": date.today().isoformat(),
            "contact_id": contact["id"],
        },
    ).json()

    blocked = test_client.put(f"/api/crm/deal-stages/{custom['id']}", json={"name": "Trial"})
    assert blocked.status_code == 409
    assert blocked.json()["details"] == {"deals": 1}
    assert test_client.get("/api/crm/deal-stages").json()[0]["name"] == "Pilot"

    resent = test_client.patch(f"/api/crm/deals/{deal['id']}", json={"stage": "Pilot", "amount": 10})
    assert resent.status_code == 200

    same_name = test_client.put(f"/api/crm/deal-stages/{custom['id']}", json={"name": "Pilot", "probability": 65})
    assert same_name.status_code == 200
    assert same_name.json()["probability"] == 65

    assert test_client.delete(f"/api/crm/deals/{deal['id']}").status_code == 200
    renamed = test_client.put(f"/api/crm/deal-stages/{custom['id']}", json={"name": "Trial"})
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Trial"


def test_inactive_stage_is_hidden_from_active_list(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    stages = test_client.post("/api/crm/deal-stages/initialize").json()
    lost = next(stage for stage in stages if stage["name"] == "Closed Lost")
    test_client.put(f"/api/crm/deal-stages/{lost['id']}", json={"is_active": False})

    active = test_client.get("/api/crm/deals/stages/list").json()
    assert "Closed Lost" not in [stage["name"] for stage in active]
    assert len(active) == 4


def test_stage_management_requires_admin_and_is_scoped(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    stages = test_client.post("/api/crm/deal-stages/initialize").json()

    set_actor("member")
    assert test_client.post("/api/crm/deal-stages", json={"name": "Nope"}).status_code == 403
    assert test_client.get("/api/crm/deals/stages/list").status_code == 200

    set_actor("other_admin")
    assert test_client.get("/api/crm/deal-stages").json() == []
    assert test_client.put(f"/api/crm/deal-stages/{stages[0]['id']}", json={"name": "Mine"}).status_code == 404
