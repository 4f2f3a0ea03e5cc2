from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import utcnow
from .db import Database
from .models import ActorRole, CaseStatus, CaseStatusHistory


@dataclass(frozen=True)
class Actor:
    """Who is acting: comes from the bearer token (identity is external)."""
    clinic_id: int
    name: str
    role: ActorRole = ActorRole.CLINICIAN
    user_id: str | None = None


class AuditTrail:
    """
    Status history of a case. Append-only: there is no update and no delete.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def append(
        self,
        s: Session,
        case_id: int,
        previous_status: CaseStatus | None,
        new_status: CaseStatus,
        actor: Actor,
        note: str | None = None,
    ) -> CaseStatusHistory:
        """Runs inside the caller's session, so the entry commits with the status write."""
        entry = CaseStatusHistory(
            case_id=case_id,
            previous_status=previous_status,
            new_status=new_status,
            actor_name=actor.name,
            actor_role=actor.role,
            note=note,
            created_at=self.clock(),
        )
        s.add(entry)
        s.flush()
        return entry

    def list_for_case(self, case_id: int, newest_first: bool = False) -> list[CaseStatusHistory]:
        with self.db.session() as s:
            return self.entries(s, case_id, newest_first)

    @staticmethod
    def entries(s: Session, case_id: int, newest_first: bool = False) -> list[CaseStatusHistory]:
        # id breaks ties between entries written within the same clock tick
        if newest_first:
            order = (CaseStatusHistory.created_at.desc(), CaseStatusHistory.id.desc())
        else:
            order = (CaseStatusHistory.created_at.asc(), CaseStatusHistory.id.asc())
        q = select(CaseStatusHistory).where(CaseStatusHistory.case_id == case_id).order_by(*order)
        return list(s.scalars(q))


def history_flat(h: CaseStatusHistory) -> dict:
    return {
        "id": h.id,
        "caseId": h.case_id,
        "previousStatus": h.previous_status.value if h.previous_status else None,
        "newStatus": h.new_status.value,
        "actorName": h.actor_name,
        "actorRole": h.actor_role.value,
        "note": h.note,
        "createdAt": h.created_at.isoformat(),
    }
