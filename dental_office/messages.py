from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .audit import Actor
from .cases import load_owned_case
from .config import utcnow
from .db import Database
from .errors import ValidationError
from .models import ActorRole, CaseMessage
from .validators import clean_text

logger = logging.getLogger(__name__)


class MessageThread:
    """
    Clinic <-> lab conversation on a case.
    - messages are append-only
    - is_read only goes False -> True, read_at is written once
    - unread count is computed on demand, never cached
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def post(self, actor: Actor, case_id: int, body: str) -> CaseMessage:
        text = clean_text(body)
        if not text:
            raise ValidationError("Message body is required")

        with self.db.session() as s:
            load_owned_case(s, actor.clinic_id, case_id)
            m = CaseMessage(
                case_id=case_id,
                sender_role=actor.role,
                sender_name=actor.name,
                body=text,
                is_read=False,
                created_at=self.clock(),
            )
            s.add(m)
            s.flush()
            logger.info("Message %s posted on case %s by %s (%s)", m.id, case_id, actor.name, actor.role.value)
            return m

    def list_for_case(self, clinic_id: int, case_id: int) -> list[CaseMessage]:
        """Chronological."""
        with self.db.session() as s:
            load_owned_case(s, clinic_id, case_id)
            return self.messages(s, case_id)

    @staticmethod
    def messages(s: Session, case_id: int) -> list[CaseMessage]:
        q = (
            select(CaseMessage)
            .where(CaseMessage.case_id == case_id)
            .order_by(CaseMessage.created_at.asc(), CaseMessage.id.asc())
        )
        return list(s.scalars(q))

    def mark_read(self, actor: Actor, case_id: int) -> int:
        """The reader marks what the other side wrote. Returns how many changed."""
        with self.db.session() as s:
            load_owned_case(s, actor.clinic_id, case_id)
            q = select(CaseMessage).where(
                CaseMessage.case_id == case_id,
                CaseMessage.sender_role != actor.role,
                CaseMessage.is_read.is_(False),
            )
            now = self.clock()
            changed = 0
            for m in s.scalars(q):
                m.is_read = True
                m.read_at = now
                changed += 1
            return changed

    def unread_count(self, clinic_id: int, case_id: int, sender_role: ActorRole = ActorRole.LAB) -> int:
        """Unread messages written by `sender_role` (lab by default: the clinic's inbox)."""
        with self.db.session() as s:
            load_owned_case(s, clinic_id, case_id)
            return self.unread(s, case_id, sender_role)

    @staticmethod
    def unread(s: Session, case_id: int, sender_role: ActorRole = ActorRole.LAB) -> int:
        return s.execute(
            select(func.count(CaseMessage.id)).where(
                CaseMessage.case_id == case_id,
                CaseMessage.sender_role == sender_role,
                CaseMessage.is_read.is_(False),
            )
        ).scalar_one()


def message_flat(m: CaseMessage) -> dict:
    return {
        "id": m.id,
        "caseId": m.case_id,
        "senderRole": m.sender_role.value,
        "senderName": m.sender_name,
        "body": m.body,
        "isRead": m.is_read,
        "readAt": m.read_at.isoformat() if m.read_at else None,
        "createdAt": m.created_at.isoformat(),
    }
