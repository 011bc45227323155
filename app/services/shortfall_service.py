# FILE: app/services/shortfall_service.py
"""
Shortfall follow-ups.

When a requisition closes (RECEIVED / PARTIALLY_RECEIVED) every line that
did not receive its full approved quantity gets one new EMERGENCY
requisition for the remainder, same warehouse pair, already SUBMITTED and
linked back through ``origin_requisition_id``. A follow-up is always
created after its origin, so the parent pointer only ever points at a
lower id and the chain cannot cycle.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.requisition import (
    Requisition,
    RequisitionItem,
    RequisitionPriority,
    RequisitionStatus,
    RequisitionType,
)
from app.services.audit_logger import record_event
from app.services.inventory_common import D, ZERO, fmt_qty, now_db, today_db
from app.services.number_series import next_doc_number
from app.services.requisition_errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

CLOSED_STATUSES = (RequisitionStatus.RECEIVED, RequisitionStatus.PARTIALLY_RECEIVED)


def shortfall_lines(req: Requisition) -> List[tuple]:
    """[(item, missing_qty)] for every line short of its approved quantity."""
    out = []
    for it in req.items or []:
        missing = D(it.approved_qty) - D(it.received_qty)
        if missing > 0:
            out.append((it, missing))
    return out


def generate_shortfall(db: Session, req: Requisition, actor_id: Optional[int]) -> List[Requisition]:
    if req.status not in CLOSED_STATUSES:
        raise ValidationError(
            f"Shortfall can only be generated for a closed requisition ({req.requisition_number})."
        )

    already = (
        db.query(Requisition.id)
        .filter(Requisition.origin_requisition_id == req.id)
        .first()
    )
    if already:
        logger.info("Shortfall for %s already generated; skipping", req.requisition_number)
        return []

    created: List[Requisition] = []
    for it, missing in shortfall_lines(req):
        created.append(_create_followup(db, req, it, missing, actor_id))

    if created:
        logger.info(
            "Requisition %s closed short: %s follow-up(s) %s",
            req.requisition_number,
            len(created),
            ", ".join(x.requisition_number for x in created),
        )
    return created


def _create_followup(
    db: Session,
    origin: Requisition,
    line: RequisitionItem,
    missing,
    actor_id: Optional[int],
) -> Requisition:
    now = now_db()
    follow = Requisition(
        requisition_number=next_doc_number(db, "REQ"),
        requisition_date=today_db(),
        required_date=origin.required_date,
        type=RequisitionType.EMERGENCY,
        priority=RequisitionPriority.HIGH,
        status=RequisitionStatus.SUBMITTED,
        fulfilling_warehouse_id=origin.fulfilling_warehouse_id,
        requesting_warehouse_id=origin.requesting_warehouse_id,
        origin_requisition_id=origin.id,
        purpose=f"Shortfall of {origin.requisition_number}",
        notes=(
            f"Auto-generated: line {line.line_no} received {fmt_qty(line.received_qty)} "
            f"of {fmt_qty(line.approved_qty)} approved."
        ),
        requester_id=origin.requester_id,
        submitted_by_id=actor_id,
        submitted_at=now,
    )
    db.add(follow)
    db.flush()

    follow.items.append(
        RequisitionItem(
            line_no=1,
            drug_id=line.drug_id,
            unit=line.unit,
            requested_qty=D(missing),
            approved_qty=ZERO,
            delivered_qty=ZERO,
            received_qty=ZERO,
            unit_price=D(line.unit_price),
            remarks=f"Shortfall of {origin.requisition_number} line {line.line_no}",
        )
    )
    db.flush()

    record_event(
        db, follow,
        action="AUTO_SUBMIT",
        from_status=None,
        actor_id=actor_id,
        notes=f"Shortfall of {origin.requisition_number}",
    )
    return follow


# ============================================================
# CHAIN
# ============================================================
def origin_chain(db: Session, requisition_id: int) -> List[Requisition]:
    """[this, parent, grandparent, ..., ultimate origin]."""
    chain: List[Requisition] = []
    seen = set()
    cur_id: Optional[int] = requisition_id
    while cur_id is not None:
        if cur_id in seen:
            # parent pointers only ever target older documents
            raise ValidationError(f"Requisition chain loops at id={cur_id}")
        seen.add(cur_id)
        cur = db.query(Requisition).filter(Requisition.id == cur_id).first()
        if not cur:
            if not chain:
                raise NotFound("Requisition not found.")
            break
        chain.append(cur)
        cur_id = cur.origin_requisition_id
    return chain


def root_requisition_id(db: Session, requisition_id: int) -> int:
    return int(origin_chain(db, requisition_id)[-1].id)


def followups_of(db: Session, requisition_id: int) -> List[Requisition]:
    """Every requisition descending from this one, breadth first."""
    out: List[Requisition] = []
    frontier = [requisition_id]
    while frontier:
        rows = (
            db.query(Requisition)
            .filter(Requisition.origin_requisition_id.in_(frontier))
            .order_by(Requisition.id.asc())
            .all()
        )
        out.extend(rows)
        frontier = [r.id for r in rows]
    return out
