from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, TypeVar

from .errors import InvalidStatus, ValidationError
from .models import CaseStatus

E = TypeVar("E", bound=enum.Enum)

# FDI two-digit notation: quadrant + position
_PERMANENT = {f"{q}{p}" for q in (1, 2, 3, 4) for p in range(1, 9)}
_DECIDUOUS = {f"{q}{p}" for q in (5, 6, 7, 8) for p in range(1, 6)}
VALID_TEETH = frozenset(_PERMANENT | _DECIDUOUS)

_CENTS = Decimal("0.01")
# Numeric(10, 2) columns
MAX_MONEY = Decimal("99999999.99")


def parse_money(value: Any, field: str) -> Decimal:
    """Non-negative amount rounded to cents."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    try:
        amount = amount.quantize(_CENTS)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large (max {MAX_MONEY})") from None
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} is too large (max {MAX_MONEY})")
    return amount


def parse_optional_money(value: Any, field: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return parse_money(value, field)


def parse_date(value: Any, field: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)") from None


def parse_enum(enum_cls: type[E], value: Any, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}") from None


def parse_id(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer id")
    try:
        ident = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer id") from None
    if ident <= 0:
        raise ValidationError(f"{field} must be a positive id")
    return ident


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_teeth(values: Iterable[Any] | None) -> list[str]:
    """Ordered tooth identifiers; order is kept, duplicates are rejected."""
    if values is None:
        return []
    if isinstance(values, (str, bytes)):
        raise ValidationError("teeth must be a list of tooth identifiers")
    teeth: list[str] = []
    for raw in values:
        tooth = str(raw).strip()
        if tooth not in VALID_TEETH:
            raise ValidationError(f"Invalid tooth identifier: {raw!r}")
        if tooth in teeth:
            raise ValidationError(f"Duplicate tooth identifier: {tooth}")
        teeth.append(tooth)
    return teeth


def validate_labels(values: Iterable[Any] | None, field: str) -> list[str]:
    """Free-text list (lab specialties): trimmed, non-empty, duplicates dropped."""
    if values is None:
        return []
    if isinstance(values, (str, bytes)):
        raise ValidationError(f"{field} must be a list of strings")
    labels: list[str] = []
    for raw in values:
        label = clean_text(raw)
        if label is None:
            raise ValidationError(f"{field} cannot contain empty values")
        if label not in labels:
            labels.append(label)
    return labels


def parse_status(value: Any) -> CaseStatus:
    """Known case status or InvalidStatus."""
    if isinstance(value, CaseStatus):
        return value
    try:
        return CaseStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatus(f"Invalid status: {value!r}") from None
