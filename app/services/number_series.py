# FILE: app/services/number_series.py
from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from app.models.number_series import DocNumberSeries
from app.services.inventory_common import org_code, today_db


def _date_key(d: date) -> int:
    return int(d.strftime("%Y%m%d"))


def next_doc_number(
    db: Session,
    key: str,                  # "REQ" / "DN" / "RCV"
    doc_date: Optional[date] = None,
    pad: int = 6,
) -> str:
    """
    Concurrency-safe daily sequence using DocNumberSeries with UNIQUE(key, date_key).
    The series row is locked FOR UPDATE for the rest of the caller's transaction.

    Example: NHREQ18102026000001
    """
    today = doc_date or today_db()
    dk = _date_key(today)

    row = (
        db.query(DocNumberSeries)
        .filter(DocNumberSeries.key == key, DocNumberSeries.date_key == dk)
        .with_for_update()
        .first()
    )

    if not row:
        row = DocNumberSeries(key=key, date_key=dk, next_seq=1)
        db.add(row)
        db.flush()
        row = (
            db.query(DocNumberSeries)
            .filter(DocNumberSeries.key == key, DocNumberSeries.date_key == dk)
            .with_for_update()
            .one()
        )

    seq = int(row.next_seq or 1)
    row.next_seq = seq + 1
    db.flush()

    return f"{org_code()}{key}{today.strftime('%d%m%Y')}{seq:0{pad}d}"
