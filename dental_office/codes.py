from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import clinic_today
from .db import Database
from .models import ProstheticCase

logger = logging.getLogger(__name__)

# No I, O, 0, 1: they get mixed up when read over the phone
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
MAX_ATTEMPTS = 10


class _Chooser(Protocol):
    def choice(self, seq: str) -> str: ...


class CodeGenerator:
    """
    Issues case codes `CP-<year>-XXXXXX`.
    - random segment from CODE_ALPHABET, checked against existing codes
    - after MAX_ATTEMPTS collisions: time-derived, strictly increasing suffix
    """

    _fallback_lock = threading.Lock()
    _last_fallback = 0

    def __init__(
        self,
        db: Database,
        rng: _Chooser | None = None,
        year: Callable[[], int] | None = None,
    ) -> None:
        self.db = db
        self.rng = rng or random.SystemRandom()
        self._year = year or (lambda: clinic_today().year)

    def _random_code(self, year: int) -> str:
        segment = "".join(self.rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        return f"CP-{year}-{segment}"

    @staticmethod
    def _exists(s: Session, code: str) -> bool:
        return s.execute(select(ProstheticCase.id).where(ProstheticCase.code == code).limit(1)).first() is not None

    @classmethod
    def _next_fallback(cls) -> int:
        with cls._fallback_lock:
            candidate = max(time.time_ns() // 1_000_000, cls._last_fallback + 1)
            cls._last_fallback = candidate
            return candidate

    def issue(self, clinic_id: int, session: Session | None = None) -> str:
        """Codes are unique across clinics; clinic_id is only used for logging."""
        if session is not None:
            return self._issue(session, clinic_id)
        with self.db.session() as s:
            return self._issue(s, clinic_id)

    def _issue(self, s: Session, clinic_id: int) -> str:
        year = self._year()
        for _ in range(MAX_ATTEMPTS):
            code = self._random_code(year)
            if not self._exists(s, code):
                return code

        logger.warning("Code collisions for clinic %s after %d attempts, using time suffix", clinic_id, MAX_ATTEMPTS)
        while True:
            code = f"CP-{year}-{self._next_fallback()}"
            if not self._exists(s, code):
                return code
