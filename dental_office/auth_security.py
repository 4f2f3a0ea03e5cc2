from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from . import config
from .audit import Actor
from .errors import Unauthorized
from .models import ActorRole


def create_access_token(
    subject: str,
    clinic_id: int,
    name: str,
    role: ActorRole | str = ActorRole.CLINICIAN,
    extra: dict[str, Any] | None = None,
    expires_minutes: int | None = None,
) -> str:
    """
    subject: the user id in the identity provider.
    Uses timezone-aware datetimes to avoid offset bugs on timestamps.
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or config.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload: dict[str, Any] = {
        "sub": subject,
        "clinic_id": clinic_id,
        "name": name,
        "role": role.value if isinstance(role, ActorRole) else role,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])


def actor_from_token(token: str) -> Actor:
    # extra guard: strip accidental spaces / quotes
    token = token.strip().strip('"').strip("'")
    try:
        payload = decode_token(token)
    except JWTError:
        raise Unauthorized("Invalid token") from None

    try:
        clinic_id = int(payload["clinic_id"])
        role = ActorRole(str(payload.get("role") or ActorRole.CLINICIAN.value))
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Token without a valid clinic or role") from None

    default_name = "Lab" if role is ActorRole.LAB else "Clinician"
    return Actor(
        clinic_id=clinic_id,
        name=str(payload.get("name") or default_name),
        role=role,
        user_id=payload.get("sub"),
    )
