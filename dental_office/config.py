from __future__ import annotations

import logging
import os
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

# SQLite file in the project root by default
DB_PATH = Path(__file__).resolve().parents[1] / "dental_office.sqlite"
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")
SQL_ECHO = os.getenv("SQL_ECHO", "0") == "1"

# In production: set it in the environment
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))

CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "America/Sao_Paulo")

CASES_DEFAULT_LIMIT = int(os.getenv("CASES_DEFAULT_LIMIT", "50"))
CASES_MAX_LIMIT = int(os.getenv("CASES_MAX_LIMIT", "200"))

# "permissive" (any status from any status) or "strict" (terminal states are final)
CASE_TRANSITION_POLICY = os.getenv("CASE_TRANSITION_POLICY", "permissive").strip().lower()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: str | None = None) -> None:
    """Root logger configuration; safe to call more than once."""
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


# =========================
# Time helpers
# =========================
def utcnow() -> datetime:
    """Naive UTC timestamp: this is how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def clinic_zone(name: str | None = None) -> ZoneInfo:
    return ZoneInfo(name or CLINIC_TIMEZONE)


def to_clinic_date(moment: datetime, tz: str | None = None) -> date:
    """Calendar day of a stored (naive UTC) timestamp on the clinic's wall clock."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(clinic_zone(tz)).date()


def clinic_today(now: datetime | None = None, tz: str | None = None) -> date:
    return to_clinic_date(now or utcnow(), tz)
