# FILE: app/services/requisition_service.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from app.models.catalog import Warehouse
from app.models.requisition import (
    Requisition,
    RequisitionItem,
    RequisitionPriority,
    RequisitionStatus,
    RequisitionType,
)
from app.services.audit_logger import record_event
from app.services.drug_catalog import DbDrugCatalog, DrugCatalog
from app.services.inventory_common import D, ZERO, append_note, check_qty_scale, fmt_qty, now_db, today_db
from app.services.number_series import next_doc_number
from app.services.requisition_errors import (
    NotFound,
    PermissionDenied,
    QuantityViolation,
    ValidationError,
)
from app.services.requisition_guard import (
    Action,
    Caller,
    Side,
    check_transition,
    move,
    side_of,
)

logger = logging.getLogger(__name__)


def _enum_value(enum_cls, raw, default):
    if raw is None or raw == "":
        return default
    try:
        return enum_cls(str(getattr(raw, "value", raw)).upper().strip())
    except ValueError:
        raise ValidationError(f"Invalid {enum_cls.__name__}: {raw}")


def check_line_invariant(it: RequisitionItem) -> None:
    """0 <= received <= delivered <= approved <= requested, or QuantityViolation."""
    rq = D(it.requested_qty)
    ap = D(it.approved_qty)
    dl = D(it.delivered_qty)
    rc = D(it.received_qty)
    if not (ZERO <= rc <= dl <= ap <= rq):
        raise QuantityViolation(
            f"Line {it.id} quantities out of bounds: received {fmt_qty(rc)}, delivered {fmt_qty(dl)}, "
            f"approved {fmt_qty(ap)}, requested {fmt_qty(rq)}."
        )


def check_invariants(req: Requisition) -> None:
    for it in req.items or []:
        check_line_invariant(it)


# ============================================================
# LOADERS
# ============================================================
def get_requisition(db: Session, requisition_id: int) -> Requisition:
    req = (
        db.query(Requisition)
        .options(selectinload(Requisition.items), selectinload(Requisition.delivery_notes))
        .filter(Requisition.id == requisition_id)
        .first()
    )
    if not req:
        raise NotFound("Requisition not found.")
    return req


def lock_requisition(db: Session, requisition_id: int) -> Requisition:
    """
    Lock the requisition and its line items FOR UPDATE for the rest of the
    caller's transaction. Two mutations of one requisition never interleave.
    """
    req = (
        db.query(Requisition)
        .filter(Requisition.id == requisition_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not req:
        raise NotFound("Requisition not found.")
    (
        db.query(RequisitionItem)
        .filter(RequisitionItem.requisition_id == req.id)
        .order_by(RequisitionItem.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )
    return req


def _active_warehouse(db: Session, warehouse_id: int, label: str) -> Warehouse:
    wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not wh or not wh.is_active:
        raise ValidationError(f"Invalid {label}.")
    return wh


# ============================================================
# CREATE / EDIT
# ============================================================
def create_requisition(
    db: Session,
    payload,
    caller: Caller,
    catalog: Optional[DrugCatalog] = None,
) -> Requisition:
    """
    New requisition in DRAFT, raised by the requesting side (the caller's own
    warehouse). Unit and unit price are snapshotted from the catalog.
    """
    if caller.warehouse_id is None:
        raise PermissionDenied("Caller is not assigned to a warehouse.")

    requesting_id = int(getattr(payload, "requesting_warehouse_id", None) or caller.warehouse_id)
    if requesting_id != int(caller.warehouse_id):
        raise PermissionDenied("Requisitions can only be raised for the caller's own warehouse.")

    fulfilling_id = int(payload.fulfilling_warehouse_id)
    if fulfilling_id == requesting_id:
        raise ValidationError("Fulfilling and requesting warehouse cannot be the same.")

    _active_warehouse(db, fulfilling_id, "fulfilling_warehouse_id")
    _active_warehouse(db, requesting_id, "requesting_warehouse_id")

    if not payload.items:
        raise ValidationError("Requisition must have at least 1 item.")

    rtype = _enum_value(RequisitionType, payload.type, RequisitionType.REGULAR)
    priority = _enum_value(RequisitionPriority, payload.priority, RequisitionPriority.NORMAL)

    catalog = catalog or DbDrugCatalog(db)

    req = Requisition(
        requisition_number=next_doc_number(db, "REQ"),
        requisition_date=today_db(),
        required_date=getattr(payload, "required_date", None),
        type=rtype,
        priority=priority,
        status=RequisitionStatus.DRAFT,
        fulfilling_warehouse_id=fulfilling_id,
        requesting_warehouse_id=requesting_id,
        purpose=(getattr(payload, "purpose", "") or "").strip(),
        notes=getattr(payload, "notes", "") or "",
        requester_id=caller.user_id,
    )
    db.add(req)
    db.flush()

    for n, it in enumerate(payload.items, start=1):
        rq = check_qty_scale(it.requested_qty, "requested_qty")
        if rq <= 0:
            raise ValidationError("requested_qty must be > 0")
        info = catalog.resolve(int(it.drug_id))
        req.items.append(
            RequisitionItem(
                line_no=n,
                drug_id=info.id,
                unit=info.unit,
                requested_qty=rq,
                approved_qty=ZERO,
                delivered_qty=ZERO,
                received_qty=ZERO,
                unit_price=info.unit_price,
                remarks=getattr(it, "remarks", "") or "",
            )
        )

    db.flush()
    record_event(db, req, action="CREATE", from_status=None, actor_id=caller.user_id)
    logger.info("Requisition %s created by user=%s wh=%s", req.requisition_number, caller.user_id, requesting_id)
    return req


def update_requisition(db: Session, requisition_id: int, payload, caller: Caller) -> Requisition:
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.UPDATE_DRAFT, caller)

    if payload.priority is not None:
        req.priority = _enum_value(RequisitionPriority, payload.priority, req.priority)
    if payload.required_date is not None:
        req.required_date = payload.required_date
    if payload.purpose is not None:
        req.purpose = payload.purpose.strip()
    if payload.notes is not None:
        req.notes = payload.notes or ""

    db.flush()
    return req


# ============================================================
# LIFECYCLE
# ============================================================
def submit_requisition(db: Session, requisition_id: int, caller: Caller) -> Requisition:
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.SUBMIT, caller)

    if not req.items:
        raise ValidationError("Requisition has no items.")
    if all(D(x.requested_qty) <= 0 for x in req.items):
        raise ValidationError("Requisition items must have requested_qty > 0.")

    prev = move(req, RequisitionStatus.SUBMITTED)
    req.submitted_by_id = caller.user_id
    req.submitted_at = now_db()
    db.flush()
    record_event(db, req, action=Action.SUBMIT.value, from_status=prev, actor_id=caller.user_id)
    return req


def approve_requisition(db: Session, requisition_id: int, payload, caller: Caller) -> Requisition:
    """
    Fulfilling side approves. approved_qty defaults to requested_qty per
    line and may be lowered (down to 0), never raised above it.
    """
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.APPROVE, caller)

    if not req.items:
        raise ValidationError("Requisition has no items.")

    approved_map: Dict[int, Decimal] = {}
    for x in (getattr(payload, "items", None) or []):
        approved_map[int(x.requisition_item_id)] = check_qty_scale(x.approved_qty, "approved_qty")

    unknown = set(approved_map) - {int(it.id) for it in req.items}
    if unknown:
        raise ValidationError(f"Invalid requisition_item_id={sorted(unknown)[0]}")

    for it in req.items:
        req_qty = D(it.requested_qty)
        ap = approved_map.get(int(it.id), req_qty)
        if ap < 0:
            raise ValidationError("approved_qty cannot be negative.")
        if ap > req_qty:
            raise QuantityViolation(
                f"approved_qty cannot exceed requested_qty for requisition_item_id={it.id}"
            )
        it.approved_qty = ap

    if all(D(it.approved_qty) <= 0 for it in req.items):
        raise ValidationError("At least one line must be approved; reject the requisition instead.")

    notes = (getattr(payload, "notes", "") or "").strip()
    req.notes = append_note(req.notes, notes)

    prev = move(req, RequisitionStatus.APPROVED)
    req.approved_by_id = caller.user_id
    req.approved_at = now_db()
    check_invariants(req)
    db.flush()
    record_event(db, req, action=Action.APPROVE.value, from_status=prev, actor_id=caller.user_id, notes=notes)
    return req


def reject_requisition(db: Session, requisition_id: int, reason: Optional[str], caller: Caller) -> Requisition:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required.")

    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.REJECT, caller)

    prev = move(req, RequisitionStatus.REJECTED)
    req.rejection_reason = reason[:500]
    req.rejected_by_id = caller.user_id
    req.rejected_at = now_db()
    req.closed_at = req.rejected_at
    db.flush()
    record_event(db, req, action=Action.REJECT.value, from_status=prev, actor_id=caller.user_id, notes=reason)
    return req


def cancel_requisition(db: Session, requisition_id: int, reason: Optional[str], caller: Caller) -> Requisition:
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.CANCEL, caller)

    reason = (reason or "").strip()
    prev = move(req, RequisitionStatus.CANCELLED)
    req.cancel_reason = reason[:255]
    req.cancelled_by_id = caller.user_id
    req.cancelled_at = now_db()
    req.closed_at = req.cancelled_at
    db.flush()
    record_event(db, req, action=Action.CANCEL.value, from_status=prev, actor_id=caller.user_id, notes=reason)
    return req


# ============================================================
# QUERIES
# ============================================================
def list_requisitions(
    db: Session,
    caller: Caller,
    *,
    direction: Optional[str] = None,     # incoming | outgoing | None (both)
    status: Optional[Iterable[str]] = None,
    type: Optional[str] = None,
    priority: Optional[str] = None,
    origin_requisition_id: Optional[int] = None,
    limit: int = 200,
) -> List[Requisition]:
    """
    Queue view for the caller's warehouse.
    incoming = caller fulfils, outgoing = caller requested.
    """
    if caller.warehouse_id is None:
        return []
    wid = int(caller.warehouse_id)

    q = db.query(Requisition).options(selectinload(Requisition.items))

    d = (direction or "").lower().strip()
    if d == "incoming":
        q = q.filter(Requisition.fulfilling_warehouse_id == wid)
    elif d == "outgoing":
        q = q.filter(Requisition.requesting_warehouse_id == wid)
    elif d:
        raise ValidationError("direction must be incoming or outgoing.")
    else:
        q = q.filter(
            or_(
                Requisition.fulfilling_warehouse_id == wid,
                Requisition.requesting_warehouse_id == wid,
            )
        )

    statuses = [_enum_value(RequisitionStatus, s, None) for s in (status or []) if s]
    if statuses:
        q = q.filter(Requisition.status.in_(statuses))
    if type:
        q = q.filter(Requisition.type == _enum_value(RequisitionType, type, None))
    if priority:
        q = q.filter(Requisition.priority == _enum_value(RequisitionPriority, priority, None))
    if origin_requisition_id:
        q = q.filter(Requisition.origin_requisition_id == origin_requisition_id)

    return q.order_by(Requisition.created_at.desc(), Requisition.id.desc()).limit(limit).all()


def get_visible_requisition(db: Session, requisition_id: int, caller: Caller) -> Requisition:
    req = get_requisition(db, requisition_id)
    if side_of(req, caller.warehouse_id) == Side.NONE:
        # neither side of the transfer: do not leak existence
        raise NotFound("Requisition not found.")
    return req
