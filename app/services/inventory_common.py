# FILE: app/services/inventory_common.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable

from app.core.config import settings
from app.services.requisition_errors import ValidationError
from app.utils.timezone import now_local, today_local

ZERO = Decimal("0")

# scale of every Numeric(14, 4) quantity column
QTY_PLACES = 4


def D(v, default="0") -> Decimal:
    try:
        if v is None or v == "":
            return Decimal(default)
        if isinstance(v, Decimal):
            return v
        return Decimal(str(v))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal(default)


def now_db() -> datetime:
    """Always store naive datetime in DATETIME columns."""
    dt = now_local()
    if getattr(dt, "tzinfo", None) is not None:
        dt = dt.replace(tzinfo=None)
    return dt


def today_db() -> date:
    return today_local()


def org_code() -> str:
    code = (settings.ORG_CODE or "").strip().upper()
    return code or "NH"


def append_note(existing: str, extra: str) -> str:
    extra = (extra or "").strip()
    if not extra:
        return existing or ""
    return (existing or "") + ("\n" if existing else "") + extra


def fmt_qty(q: Decimal) -> str:
    return format(D(q).normalize(), "f")


def ids_sorted(values: Iterable[int]) -> list:
    # requisitions are always locked in ascending id order
    return sorted({int(v) for v in values})


def check_qty_scale(q, label: str = "quantity") -> Decimal:
    """Reject quantities the database would round on store."""
    v = D(q)
    if not v.is_finite():
        raise ValidationError(f"{label} must be a number.")
    if v.normalize().as_tuple().exponent < -QTY_PLACES:
        raise ValidationError(f"{label} allows at most {QTY_PLACES} decimal places, got {fmt_qty(v)}.")
    return v
