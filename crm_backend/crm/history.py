from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_backend.crm.models import CRMLead, CRMLeadHistory

TRACKED_FIELDS = ("first_name", "last_name", "email", "phone", "lead_source", "lead_stage")

HISTORY_ACTIONS = {"created", "updated", "status_changed", "deleted", "restored"}


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class HistoryRecorder:
    """Append-only audit trail for lead mutations."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        lead: CRMLead,
        action: str,
        *,
        actor_id: uuid.UUID,
        changes: dict[str, Any] | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> CRMLeadHistory:
        if action not in HISTORY_ACTIONS:
            raise ValueError(f"unknown history action: {action}")

        row = CRMLeadHistory(
            lead_id=lead.id,
            organization_id=lead.organization_id,
            user_id=actor_id,
            action=action,
            changes={key: _json_value(value) for key, value in (changes or {}).items()},
            old_values={key: _json_value(value) for key, value in (old_values or {}).items()},
            new_values={key: _json_value(value) for key, value in (new_values or {}).items()},
        )
        self.session.add(row)
        self.session.flush()
        return row

    @staticmethod
    def diff(
        current: CRMLead,
        incoming: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        """Return ``(changes, old_values, new_values)`` over the tracked fields.

        Only fields present in ``incoming`` whose value actually differs are
        reported; ``changes`` maps each to its new value.
        """
        changes: dict[str, Any] = {}
        old_values: dict[str, Any] = {}
        new_values: dict[str, Any] = {}
        for field_name in TRACKED_FIELDS:
            if field_name not in incoming:
                continue
            before = getattr(current, field_name)
            after = incoming[field_name]
            if before == after:
                continue
            changes[field_name] = after
            old_values[field_name] = before
            new_values[field_name] = after
        return changes, old_values, new_values

    def list_for_lead(self, organization_id: uuid.UUID, lead_id: uuid.UUID) -> list[CRMLeadHistory]:
        stmt = (
            select(CRMLeadHistory)
            .where(
                CRMLeadHistory.organization_id == organization_id,
                CRMLeadHistory.lead_id == lead_id,
            )
            .order_by(CRMLeadHistory.created_at.desc(), CRMLeadHistory.id.desc())
        )
        return list(self.session.scalars(stmt).all())
