from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping

from .audit import Actor, AuditTrail
from .cases import load_owned_case
from .config import clinic_today, utcnow
from .db import Database
from .errors import TransitionNotAllowed
from .models import TERMINAL_STATUSES, CaseStatus, ProstheticCase
from .validators import parse_money, parse_status

logger = logging.getLogger(__name__)


class TransitionPolicy:
    """
    Which status may follow which.
    allowed=None means any known status is reachable from any status (same state included).
    """

    def __init__(self, allowed: Mapping[CaseStatus, set[CaseStatus]] | None = None) -> None:
        self.allowed = None if allowed is None else {k: frozenset(v) for k, v in allowed.items()}

    @classmethod
    def permissive(cls) -> "TransitionPolicy":
        return cls(None)

    @classmethod
    def strict(cls) -> "TransitionPolicy":
        """Terminal states are final; everything else moves freely."""
        every = set(CaseStatus)
        return cls({s: (set() if s in TERMINAL_STATUSES else every) for s in CaseStatus})

    @classmethod
    def from_name(cls, name: str) -> "TransitionPolicy":
        if name == "strict":
            return cls.strict()
        if name == "permissive":
            return cls.permissive()
        raise ValueError(f"Unknown transition policy: {name!r}")

    def is_allowed(self, current: CaseStatus, new: CaseStatus) -> bool:
        if self.allowed is None:
            return True
        return new in self.allowed.get(current, frozenset())

    def check(self, current: CaseStatus, new: CaseStatus) -> None:
        if not self.is_allowed(current, new):
            raise TransitionNotAllowed(f"Transition {current.value} -> {new.value} is not allowed")


class StatusTransitionEngine:
    """
    Applies status changes. Read, side effects, status write and history entry
    happen under the case lock and inside a single transaction.
    """

    def __init__(
        self,
        db: Database,
        audit: AuditTrail,
        policy: TransitionPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        tz: str | None = None,
    ) -> None:
        self.db = db
        self.audit = audit
        self.policy = policy or TransitionPolicy.permissive()
        self.clock = clock
        self.tz = tz

    def transition(
        self,
        case_id: int,
        new_status: CaseStatus | str,
        actor: Actor,
        note: str | None = None,
        cost_value: Decimal | float | str | None = None,
    ) -> ProstheticCase:
        status = parse_status(new_status)
        cost = parse_money(cost_value, "costValue") if cost_value is not None else None

        with self.db.case_lock(case_id), self.db.session() as s:
            case = load_owned_case(s, actor.clinic_id, case_id, for_update=True)
            previous = case.status
            try:
                self.policy.check(previous, status)
            except TransitionNotAllowed:
                logger.warning("Rejected transition %s -> %s on case %s", previous.value, status.value, case.code)
                raise

            now = self.clock()
            case.status = status
            if status is CaseStatus.FINALIZED:
                if case.date_actual_return is None:
                    case.date_actual_return = clinic_today(now, self.tz)
                # refreshed on every finalize, re-finalizing included
                case.finalized_at = now
            else:
                case.finalized_at = None

            if cost is not None:
                case.cost_value = cost
            case.updated_at = now

            self.audit.append(s, case.id, previous, status, actor, note)
            s.flush()

            logger.info(
                "Case %s: %s -> %s by %s (%s)",
                case.code, previous.value, status.value, actor.name, actor.role.value,
            )
            return case

    def cancel(self, case_id: int, actor: Actor, note: str | None = "Case cancelled") -> ProstheticCase:
        """Soft termination: the record stays, status becomes cancelled."""
        return self.transition(case_id, CaseStatus.CANCELLED, actor, note=note)
