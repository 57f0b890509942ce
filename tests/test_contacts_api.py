from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

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

    actors = {
        "user1": ActorUser(user_id=uuid.uuid4(), organization_id=uuid.uuid4(), role="user"),
        "user2": ActorUser(user_id=uuid.uuid4(), organization_id=uuid.uuid4(), role="user"),
    }
    state = {"current": "user1"}

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


def _create_contact(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "company": "Analytical Engines",
    }
    payload.update(overrides)
    response = client.post("/api/crm/contacts", json=payload)
    assert response.status_code == 201
    return response.json()


def test_create_and_get_contact(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)
    assert contact["full_name"] == "Ada Lovelace"
    assert contact["is_deleted"] is False
    assert contact["deleted_at"] is None

    fetched = test_client.get(f"/api/crm/contacts/{contact['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["email"] == "ada@example.com"
    assert any(item["event_type"] == "crm.contact.created" for item in events.published_events)


def test_create_contact_requires_last_name(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/contacts", json={"first_name": "Ada"})
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"]


def test_update_contact_keeps_last_name_when_null(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)

    response = test_client.patch(
        f"/api/crm/contacts/{contact['id']}",
        json={"last_name": None, "job_title": "Mathematician"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["last_name"] == "Lovelace"
    assert body["job_title"] == "Mathematician"
    assert body["last_modified_by"] is not None


def test_contacts_are_isolated_per_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    contact = _create_contact(test_client)

    set_actor("user2")
    assert test_client.get("/api/crm/contacts").json() == []
    assert test_client.get(f"/api/crm/contacts/{contact['id']}").status_code == 404
    assert test_client.patch(f"/api/crm/contacts/{contact['id']}", json={"notes": "x"}).status_code == 404
    assert test_client.delete(f"/api/crm/contacts/{contact['id']}").status_code == 404


def test_contact_delete_info_counts_related_records(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = test_client.post("/api/crm/leads", json={"last_name": "Hopper", "email": "grace@example.com"})
    assert created.status_code == 201
    contact_id = created.json()["contact"]["id"]

    info = test_client.get(f"/api/crm/contacts/{contact_id}/delete-info")
    assert info.status_code == 200
    body = info.json()
    assert body["can_delete"] is True
    assert body["blockers"] == []
    assert body["related"] == {"leads": 1, "deals": 0, "accounts": 0}
    assert body["warnings"] == ["Contact has 1 active leads"]
