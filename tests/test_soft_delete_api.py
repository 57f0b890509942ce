from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, timedelta

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
        "owner": ActorUser(user_id=uuid.uuid4(), organization_id=uuid.uuid4(), role="user"),
        "outsider": ActorUser(user_id=uuid.uuid4(), organization_id=uuid.uuid4(), role="user"),
    }
    state = {"current": "owner"}

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


def _create_contact(client: TestClient, last_name: str = "Curie") -> dict:
    response = client.post("/api/crm/contacts", json={"first_name": "Marie", "last_name": last_name})
    assert response.status_code == 201
    return response.json()


def _create_won_account_setup_deal(client: TestClient) -> dict:
    contact = _create_contact(client)
    response = client.post(
        "/api/crm/deals",
        json={
            "first_name": "Marie",
            "last_name": "Curie",
            "stage": "Closed Won",
            "deal_type": "account-setup",
            "close_date": date.today().isoformat(),
            "amount": 300,
            "contact_id": contact["id"],
        },
    )
    assert response.status_code == 201
    return response.json()


def test_soft_delete_then_restore_contact(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)
    other = _create_contact(test_client, last_name="Meitner")

    deleted = test_client.request(
        "DELETE",
        f"/api/crm/contacts/{contact['id']}",
        json={"reason": "duplicate", "notes": "merged into Meitner"},
    )
    assert deleted.status_code == 200
    body = deleted.json()
    assert body["is_deleted"] is True
    assert body["deletion_reason"] == "duplicate"
    assert body["deletion_notes"] == "merged into Meitner"
    assert body["deleted_by"] is not None
    assert body["deleted_at"] is not None

    listed = test_client.get("/api/crm/contacts").json()
    assert [row["id"] for row in listed] == [other["id"]]
    assert test_client.get(f"/api/crm/contacts/{contact['id']}").status_code == 404
    assert test_client.get(f"/api/crm/contacts/{contact['id']}", params={"include_deleted": True}).status_code == 200

    deleted_only = test_client.get("/api/crm/contacts", params={"deleted_only": True}).json()
    assert [row["id"] for row in deleted_only] == [contact["id"]]
    everything = test_client.get("/api/crm/contacts", params={"include_deleted": True}).json()
    assert len(everything) == 2

    restored = test_client.post(f"/api/crm/contacts/{contact['id']}/restore")
    assert restored.status_code == 200
    restored_body = restored.json()
    assert restored_body["is_deleted"] is False
    assert restored_body["deleted_at"] is None
    assert restored_body["deleted_by"] is None
    assert restored_body["deletion_reason"] is None
    assert restored_body["deletion_notes"] is None

    listed_again = test_client.get("/api/crm/contacts").json()
    assert {row["id"] for row in listed_again} == {contact["id"], other["id"]}

    event_types = [item["event_type"] for item in events.published_events]
    assert "crm.contact.deleted" in event_types
    assert "crm.contact.restored" in event_types


def test_delete_without_body_defaults_reason(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)
    response = test_client.delete(f"/api/crm/contacts/{contact['id']}")
    assert response.status_code == 200
    assert response.json()["deletion_reason"] == "other"


def test_delete_twice_and_restore_live_record_return_404(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)

    assert test_client.post(f"/api/crm/contacts/{contact['id']}/restore").status_code == 404
    assert test_client.delete(f"/api/crm/contacts/{contact['id']}").status_code == 200
    assert test_client.delete(f"/api/crm/contacts/{contact['id']}").status_code == 404


def test_invalid_deletion_reason_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)
    response = test_client.request("DELETE", f"/api/crm/contacts/{contact['id']}", json={"reason": "bored"})
    assert response.status_code == 422


def test_closed_won_deal_linked_to_account_cannot_be_deleted(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    deal = _create_won_account_setup_deal(test_client)
    assert deal["account_id"] is not None
    account = test_client.get(f"/api/crm/accounts/{deal['account_id']}").json()

    info = test_client.get(f"/api/crm/deals/{deal['id']}/delete-info")
    assert info.status_code == 200
    assert info.json()["can_delete"] is False

    response = test_client.delete(f"/api/crm/deals/{deal['id']}")
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "conflict"
    assert account["account_number"] in body["message"]
    assert "Deal is Closed Won" in body["details"]["blockers"]
    assert f"Deal is linked to account {account['account_number']}" in body["details"]["blockers"]

    still_there = test_client.get(f"/api/crm/deals/{deal['id']}")
    assert still_there.status_code == 200
    assert still_there.json()["is_deleted"] is False


def test_active_account_blocks_deletion_until_status_changes(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    deal = _create_won_account_setup_deal(test_client)
    account_id = deal["account_id"]

    blocked = test_client.delete(f"/api/crm/accounts/{account_id}")
    assert blocked.status_code == 409
    assert blocked.json()["details"]["blockers"] == ["Account is active; change its status before deleting"]

    assert test_client.patch(f"/api/crm/accounts/{account_id}", json={"status": "cancelled"}).status_code == 200
    deleted = test_client.request(
        "DELETE",
        f"/api/crm/accounts/{account_id}",
        json={"reason": "customer_request"},
    )
    assert deleted.status_code == 200
    assert deleted.json()["is_deleted"] is True


def test_deal_delete_info_reports_warnings(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)
    deal = test_client.post(
        "/api/crm/deals",
        json={
            "first_name": "Marie",
            "last_name": "Curie",
            "stage": "Negotiation",
            "close_date": (date.today() + timedelta(days=3)).isoformat(),
            "amount": 25000,
            "contact_id": contact["id"],
        },
    ).json()

    info = test_client.get(f"/api/crm/deals/{deal['id']}/delete-info").json()
    assert info["can_delete"] is True
    assert info["blockers"] == []
    assert "Deal is in Negotiation stage" in info["warnings"]
    assert "Deal amount is 25000.00" in info["warnings"]
    assert "Deal closes within 7 days" in info["warnings"]

    assert test_client.delete(f"/api/crm/deals/{deal['id']}").status_code == 200


def test_won_lead_cannot_be_deleted(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = test_client.post("/api/crm/leads", json={"last_name": "Franklin", "lead_stage": "Won"}).json()["lead"]

    response = test_client.delete(f"/api/crm/leads/{lead['id']}")
    assert response.status_code == 409
    assert response.json()["details"]["blockers"] == ["Lead is marked as Won"]


def test_lead_delete_annotates_contact_and_records_history(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    created = test_client.post(
        "/api/crm/leads",
        json={"first_name": "Rosalind", "last_name": "Franklin", "budget": "5000+", "lead_source": "referral"},
    ).json()
    lead_id = created["lead"]["id"]
    contact_id = created["contact"]["id"]

    info = test_client.get(f"/api/crm/leads/{lead_id}/delete-info").json()
    assert info["can_delete"] is True
    assert "Lead has a high budget or an immediate timeline" in info["warnings"]

    deleted = test_client.request(
        "DELETE",
        f"/api/crm/leads/{lead_id}",
        json={"reason": "spam", "notes": "bot signup", "contact_action": "keep"},
    )
    assert deleted.status_code == 200
    assert deleted.json()["is_deleted"] is True

    contact = test_client.get(f"/api/crm/contacts/{contact_id}").json()
    assert contact["is_deleted"] is False
    assert "Lead Rosalind Franklin deleted (spam); contact action: keep" in contact["notes"]

    restored = test_client.post(f"/api/crm/leads/{lead_id}/restore")
    assert restored.status_code == 200
    assert restored.json()["is_deleted"] is False

    history = test_client.get(f"/api/crm/leads/{lead_id}/history").json()
    assert {row["action"] for row in history} == {"created", "deleted", "restored"}


def test_soft_delete_is_scoped_to_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    contact = _create_contact(test_client)

    set_actor("outsider")
    assert test_client.delete(f"/api/crm/contacts/{contact['id']}").status_code == 404
    assert test_client.get(f"/api/crm/contacts/{contact['id']}/delete-info").status_code == 404

    set_actor("owner")
    assert test_client.get(f"/api/crm/contacts/{contact['id']}").json()["is_deleted"] is False


def test_account_delete_info_reports_revenue_warnings(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    contact = _create_contact(test_client)
    renewal = date.today() + timedelta(days=90)
    account = test_client.post(
        "/api/crm/accounts",
        json={
            "account_name": "Curie Premium",
            "service_type": "premium",
            "status": "suspended",
            "account_holder_name": "Marie Curie",
            "current_monthly_price": 500,
            "start_date": (date.today() - timedelta(days=275)).isoformat(),
            "renewal_date": renewal.isoformat(),
            "last_payment_date": (date.today() - timedelta(days=5)).isoformat(),
            "total_revenue": 6000,
            "contact_id": contact["id"],
        },
    )
    assert account.status_code == 201

    info = test_client.get(f"/api/crm/accounts/{account.json()['id']}/delete-info").json()
    assert info["can_delete"] is True
    assert info["blockers"] == []
    assert info["warnings"] == [
        "Account received a payment within the last 30 days",
        "Account total revenue is 6000.00",
        f"Account renews on {renewal.isoformat()}",
    ]


def test_converted_lead_cannot_be_deleted(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = test_client.post("/api/crm/leads", json={"last_name": "Hodgkin"}).json()["lead"]
    patched = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"converted_date": "2026-03-01T09:00:00Z"})
    assert patched.status_code == 200

    info = test_client.get(f"/api/crm/leads/{lead['id']}/delete-info").json()
    assert info["can_delete"] is False
    assert info["blockers"] == ["Lead has already been converted"]

    response = test_client.delete(f"/api/crm/leads/{lead['id']}")
    assert response.status_code == 409
    assert response.json()["details"]["blockers"] == ["Lead has already been converted"]
    assert test_client.get(f"/api/crm/leads/{lead['id']}").json()["is_deleted"] is False


RESTORE_VOLATILE_FIELDS = {
    "is_deleted",
    "deleted_at",
    "deleted_by",
    "deletion_reason",
    "deletion_notes",
    "last_modified_by",
    "updated_at",
}


def _create_restorable(client: TestClient, entity_type: str) -> str:
    contact = _create_contact(client)
    if entity_type == "lead":
        response = client.post(
            "/api/crm/leads",
            json={"first_name": "Lise", "last_name": "Meitner", "budget": "1000-5000", "lead_source": "website"},
        )
        return response.json()["lead"]["id"]
    if entity_type == "deal":
        response = client.post(
            "/api/crm/deals",
            json={
                "first_name": "Marie",
                "last_name": "Curie",
                "stage": "Proposal",
                "close_date": (date.today() + timedelta(days=30)).isoformat(),
                "amount": 1200,
                "product": "premium",
                "contact_id": contact["id"],
            },
        )
        return response.json()["id"]
    response = client.post(
        "/api/crm/accounts",
        json={
            "account_name": "Curie Family",
            "service_type": "family",
            "account_holder_name": "Marie Curie",
            "current_monthly_price": 80,
            "start_date": "2026-02-01",
            "total_revenue": 160,
            "notes": "two lines",
            "contact_id": contact["id"],
        },
    )
    return response.json()["id"]


@pytest.mark.parametrize(
    ("entity_type", "path"),
    [("lead", "leads"), ("deal", "deals"), ("account", "accounts")],
)
def test_restore_returns_record_to_its_pre_delete_state(
    client: tuple[TestClient, Callable[[str], None]],
    entity_type: str,
    path: str,
) -> None:
    test_client, _ = client
    entity_id = _create_restorable(test_client, entity_type)
    before = test_client.get(f"/api/crm/{path}/{entity_id}").json()

    deleted = test_client.request(
        "DELETE",
        f"/api/crm/{path}/{entity_id}",
        json={"reason": "invalid_data", "notes": "wrong record"},
    )
    assert deleted.status_code == 200
    assert test_client.get(f"/api/crm/{path}/{entity_id}").status_code == 404

    restored = test_client.post(f"/api/crm/{path}/{entity_id}/restore")
    assert restored.status_code == 200
    after = restored.json()

    assert after["is_deleted"] is False
    for field_name in ("deleted_at", "deleted_by", "deletion_reason", "deletion_notes"):
        assert after[field_name] is None
    assert {key: value for key, value in after.items() if key not in RESTORE_VOLATILE_FIELDS} == {
        key: value for key, value in before.items() if key not in RESTORE_VOLATILE_FIELDS
    }
    assert test_client.get(f"/api/crm/{path}/{entity_id}").json() == after
