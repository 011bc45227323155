# FILE: app/services/receiving_service.py
"""
Receiving reconciliation.

A receiving session is a unit of work: items are accumulated locally by one
operator and nothing outside the session changes until ``complete_session``.
Completion runs in the caller's transaction and is all-or-nothing:

  for each item (insertion order)
    lock + re-read the requisition line
    pending = delivered - received            (recomputed per item)
    quantity > pending  -> QuantityViolation  (never clipped)
    received += quantity, allocate onto delivery-note lines
    post RECEIVE to the stock ledger, key "RCV:<session>:<item>"
  settle every touched requisition (RECEIVED / PARTIALLY_RECEIVED + shortfall)

Any error propagates; the caller rolls back and the session stays OPEN.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from app.models.catalog import Warehouse
from app.models.receiving import (
    ReceivedCondition,
    ReceivingItem,
    ReceivingSession,
    ReceivingSessionStatus,
)
from app.models.requisition import (
    DeliveryNote,
    DeliveryNoteItem,
    Requisition,
    RequisitionItem,
    RequisitionStatus,
)
from app.services.audit_logger import emit_event, record_event
from app.services.delivery_note_service import close_open_notes, refresh_note_status
from app.services.inventory_common import D, check_qty_scale, fmt_qty, ids_sorted, now_db, today_db
from app.services.number_series import next_doc_number
from app.services.requisition_errors import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    QuantityViolation,
    ValidationError,
)
from app.services.requisition_guard import Action, Caller, check_transition, move
from app.services.requisition_service import check_line_invariant, lock_requisition
from app.services.shortfall_service import generate_shortfall
from app.services.stock_ledger import DbStockLedger, StockLedger, with_retry

logger = logging.getLogger(__name__)

AWAITING_RECEIPT = (RequisitionStatus.IN_TRANSIT, RequisitionStatus.DELIVERED)


@dataclass
class CompletionResult:
    session: ReceivingSession
    requisitions: List[Requisition] = field(default_factory=list)
    followups: List[Requisition] = field(default_factory=list)


# ============================================================
# SESSION (local accumulation)
# ============================================================
def open_session(db: Session, warehouse_id: int, caller: Caller, notes: str = "") -> ReceivingSession:
    if caller.warehouse_id is None or int(caller.warehouse_id) != int(warehouse_id):
        raise PermissionDenied("Receiving sessions can only be opened for the caller's own warehouse.")
    if caller.user_id is None:
        raise PermissionDenied("Receiving sessions need an identified operator.")

    wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not wh or not wh.is_active:
        raise ValidationError("Invalid warehouse_id.")

    already_open = (
        db.query(func.count(ReceivingSession.id))
        .filter(
            ReceivingSession.operator_id == caller.user_id,
            ReceivingSession.status == ReceivingSessionStatus.OPEN,
        )
        .scalar()
    )
    if already_open:
        logger.warning("Operator %s opens another session with %s still open", caller.user_id, already_open)

    sess = ReceivingSession(
        session_number=next_doc_number(db, "RCV"),
        warehouse_id=int(warehouse_id),
        operator_id=int(caller.user_id),
        status=ReceivingSessionStatus.OPEN,
        notes=notes or "",
        started_at=now_db(),
    )
    db.add(sess)
    db.flush()
    return sess


def get_session(db: Session, session_id: int, caller: Optional[Caller] = None) -> ReceivingSession:
    sess = (
        db.query(ReceivingSession)
        .options(selectinload(ReceivingSession.items))
        .filter(ReceivingSession.id == session_id)
        .first()
    )
    if not sess:
        raise NotFound("Receiving session not found.")
    if caller is not None and caller.warehouse_id is not None and int(caller.warehouse_id) != int(sess.warehouse_id):
        raise NotFound("Receiving session not found.")
    return sess


def _owned_open_session(db: Session, session_id: int, caller: Caller, *, lock: bool = False) -> ReceivingSession:
    q = db.query(ReceivingSession).filter(ReceivingSession.id == session_id)
    if lock:
        q = q.with_for_update().populate_existing()
    sess = q.first()
    if not sess:
        raise NotFound("Receiving session not found.")
    if caller.user_id is None or int(sess.operator_id) != int(caller.user_id):
        raise PermissionDenied("Receiving session belongs to another operator.")
    if sess.status == ReceivingSessionStatus.COMPLETED:
        raise InvalidTransition(f"Receiving session {sess.session_number} is already completed.")
    if sess.status != ReceivingSessionStatus.OPEN:
        raise InvalidTransition(f"Receiving session {sess.session_number} is {sess.status.value}.")
    return sess


def _parse_condition(raw) -> ReceivedCondition:
    if raw is None or raw == "":
        return ReceivedCondition.GOOD
    try:
        return ReceivedCondition(str(getattr(raw, "value", raw)).upper().strip())
    except ValueError:
        raise ValidationError(f"Invalid condition: {raw}")


def _check_pending(
    sess: ReceivingSession,
    line: RequisitionItem,
    qty: Decimal,
    replacing: Optional[ReceivingItem] = None,
) -> None:
    # early feedback only; completion re-checks under lock
    in_session = sum(
        (
            D(x.quantity) for x in sess.items
            if int(x.requisition_item_id) == int(line.id) and x is not replacing
        ),
        D(0),
    )
    pending = D(line.delivered_qty) - D(line.received_qty) - in_session
    if qty > pending:
        raise QuantityViolation(
            f"Received qty exceeds pending for requisition item {line.id}. "
            f"Pending {fmt_qty(pending)}, received {fmt_qty(qty)}."
        )


def add_received_item(db: Session, session_id: int, payload, caller: Caller) -> ReceivingItem:
    """
    Accumulate one physically received quantity. Reads only; the line,
    the notes and the stock ledger are untouched until completion.
    """
    qty = check_qty_scale(payload.quantity)
    if qty <= 0:
        raise ValidationError("quantity must be > 0")

    sess = _owned_open_session(db, session_id, caller)
    condition = _parse_condition(getattr(payload, "condition", None))

    line = db.query(RequisitionItem).filter(RequisitionItem.id == payload.requisition_item_id).first()
    if not line:
        raise NotFound(f"Requisition item {payload.requisition_item_id} not found.")
    req = db.query(Requisition).filter(Requisition.id == line.requisition_id).first()

    ref_req = getattr(payload, "requisition_id", None)
    if ref_req is not None and int(ref_req) != int(req.id):
        raise ValidationError("requisition_item_id does not belong to requisition_id.")

    check_transition(req, Action.RECEIVE, Caller(caller.user_id, sess.warehouse_id))

    drug_id = getattr(payload, "drug_id", None)
    if drug_id is not None and int(drug_id) != int(line.drug_id):
        raise ValidationError("drug_id does not match the requisition line.")

    note_id = getattr(payload, "delivery_note_id", None)
    if note_id is not None:
        note_line = (
            db.query(DeliveryNoteItem)
            .join(DeliveryNote, DeliveryNote.id == DeliveryNoteItem.delivery_note_id)
            .filter(
                DeliveryNote.id == note_id,
                DeliveryNote.requisition_id == req.id,
                DeliveryNoteItem.requisition_item_id == line.id,
            )
            .first()
        )
        if not note_line:
            raise ValidationError(f"Delivery note {note_id} does not ship requisition item {line.id}.")

    _check_pending(sess, line, qty)

    ri = ReceivingItem(
        requisition_id=req.id,
        requisition_item_id=line.id,
        delivery_note_id=note_id,
        drug_id=line.drug_id,
        quantity=qty,
        lot_no=(getattr(payload, "lot_no", "") or "").strip(),
        expiry_date=getattr(payload, "expiry_date", None),
        manufacturer=(getattr(payload, "manufacturer", "") or "").strip(),
        condition=condition,
        notes=getattr(payload, "notes", "") or "",
    )
    sess.items.append(ri)
    db.flush()
    return ri


def update_received_item(db: Session, session_id: int, item_id: int, quantity, caller: Caller) -> ReceivingItem:
    """Operator correction of a quantity before completion."""
    qty = check_qty_scale(quantity)
    if qty <= 0:
        raise ValidationError("quantity must be > 0")
    sess = _owned_open_session(db, session_id, caller)
    ri = next((x for x in sess.items if int(x.id) == int(item_id)), None)
    if not ri:
        raise NotFound("Receiving item not found.")
    line = db.query(RequisitionItem).filter(RequisitionItem.id == ri.requisition_item_id).first()
    _check_pending(sess, line, qty, replacing=ri)
    ri.quantity = qty
    db.flush()
    return ri


def remove_received_item(db: Session, session_id: int, item_id: int, caller: Caller) -> ReceivingSession:
    sess = _owned_open_session(db, session_id, caller)
    ri = next((x for x in sess.items if int(x.id) == int(item_id)), None)
    if not ri:
        raise NotFound("Receiving item not found.")
    sess.items.remove(ri)
    db.flush()
    return sess


def abandon_session(db: Session, session_id: int, caller: Caller) -> ReceivingSession:
    sess = _owned_open_session(db, session_id, caller, lock=True)
    sess.status = ReceivingSessionStatus.ABANDONED
    sess.abandoned_at = now_db()
    db.flush()
    logger.info("Receiving session %s abandoned by %s", sess.session_number, caller.user_id)
    return sess


# ============================================================
# COMPLETE (commit boundary)
# ============================================================
def complete_session(
    db: Session,
    session_id: int,
    caller: Caller,
    ledger: Optional[StockLedger] = None,
) -> CompletionResult:
    sess = _owned_open_session(db, session_id, caller, lock=True)
    items = (
        db.query(ReceivingItem)
        .filter(ReceivingItem.session_id == sess.id)
        .order_by(ReceivingItem.id.asc())
        .all()
    )
    if not items:
        raise ValidationError(f"Receiving session {sess.session_number} has no items.")

    ledger = ledger or DbStockLedger(db)
    receiver = Caller(caller.user_id, sess.warehouse_id)

    reqs: Dict[int, Requisition] = {}
    for rid in ids_sorted(x.requisition_id for x in items):
        req = lock_requisition(db, rid)
        check_transition(req, Action.RECEIVE, receiver)
        reqs[rid] = req

    lines: Dict[int, RequisitionItem] = {
        int(it.id): it for req in reqs.values() for it in req.items
    }

    for ri in items:
        line = lines.get(int(ri.requisition_item_id))
        if line is None:
            raise NotFound(f"Requisition item {ri.requisition_item_id} not found.")

        qty = D(ri.quantity)
        if qty <= 0:
            raise ValidationError("quantity must be > 0")

        pending = D(line.delivered_qty) - D(line.received_qty)
        if qty > pending:
            raise QuantityViolation(
                f"Requisition item {line.id}: receiving {fmt_qty(qty)} but only "
                f"{fmt_qty(pending)} pending (delivered {fmt_qty(line.delivered_qty)}, "
                f"received {fmt_qty(line.received_qty)})."
            )

        line.received_qty = D(line.received_qty) + qty
        check_line_invariant(line)
        _allocate_to_notes(db, line, qty, ri.delivery_note_id)

        req = reqs[int(line.requisition_id)]
        ri.stock_movement_id = with_retry(
            lambda: ledger.post_receive(
                warehouse_id=sess.warehouse_id,
                drug_id=ri.drug_id,
                quantity=qty,
                lot_no=ri.lot_no,
                expiry_date=ri.expiry_date,
                condition=ri.condition,
                reference_requisition_id=req.id,
                idempotency_key=ri.idempotency_key,
                user_id=caller.user_id,
            ),
            what=f"post_receive {ri.idempotency_key}",
        )

    result = CompletionResult(session=sess)
    now = now_db()
    for req in reqs.values():
        for note in _notes_of(db, req.id):
            if note.received_by_id is None and any(D(x.received_qty) > 0 for x in note.items):
                note.received_by_id = caller.user_id
                note.received_at = now
            refresh_note_status(note)
        result.followups.extend(settle_requisition(db, req, caller.user_id, via=sess.session_number))
        result.requisitions.append(req)

    sess.status = ReceivingSessionStatus.COMPLETED
    sess.completed_at = now
    db.flush()

    emit_event(
        db,
        action="RECEIVING_COMPLETE",
        table_name="inv_receiving_sessions",
        record_id=sess.id,
        actor_id=caller.user_id,
        notes=f"{sess.session_number}: {len(items)} item(s)",
    )
    logger.info(
        "Receiving session %s completed: %s items, %s requisitions, %s follow-ups",
        sess.session_number, len(items), len(result.requisitions), len(result.followups),
    )
    return result


def _notes_of(db: Session, requisition_id: int) -> List[DeliveryNote]:
    return (
        db.query(DeliveryNote)
        .options(selectinload(DeliveryNote.items))
        .filter(DeliveryNote.requisition_id == requisition_id)
        .order_by(DeliveryNote.id.asc())
        .with_for_update()
        .all()
    )


def _allocate_to_notes(db: Session, line: RequisitionItem, qty: Decimal, note_id: Optional[int]) -> None:
    """
    Spread a received quantity over the delivery-note lines of this
    requisition line: the named note first, then oldest note first.
    """
    note_lines = (
        db.query(DeliveryNoteItem)
        .join(DeliveryNote, DeliveryNote.id == DeliveryNoteItem.delivery_note_id)
        .filter(DeliveryNoteItem.requisition_item_id == line.id)
        .order_by(DeliveryNoteItem.id.asc())
        .with_for_update()
        .all()
    )
    if note_id is not None:
        named = [x for x in note_lines if int(x.delivery_note_id) == int(note_id)]
        named_pending = sum((D(x.delivered_qty) - D(x.received_qty) for x in named), D(0))
        if qty > named_pending:
            raise QuantityViolation(
                f"Delivery note {note_id}: receiving {fmt_qty(qty)} but only "
                f"{fmt_qty(named_pending)} pending on that note for item {line.id}."
            )
        note_lines = named

    remaining = D(qty)
    for nl in note_lines:
        if remaining <= 0:
            break
        free = D(nl.delivered_qty) - D(nl.received_qty)
        if free <= 0:
            continue
        take = free if free <= remaining else remaining
        nl.received_qty = D(nl.received_qty) + take
        remaining -= take

    if remaining > 0:
        raise QuantityViolation(
            f"Requisition item {line.id}: {fmt_qty(remaining)} received beyond its delivery notes."
        )


# ============================================================
# SETTLEMENT
# ============================================================
def settle_requisition(db: Session, req: Requisition, actor_id: Optional[int], via: str = "") -> List[Requisition]:
    """
    After a posting:
      every line received == delivered == approved        -> RECEIVED
      every line delivered == approved, some line short,
        every delivery note has had a receipt posted      -> PARTIALLY_RECEIVED + shortfall
      otherwise (more shipments expected)                 -> status unchanged
    """
    lines = req.items or []
    all_delivered = all(D(x.delivered_qty) >= D(x.approved_qty) for x in lines)
    all_received = all(D(x.received_qty) >= D(x.delivered_qty) for x in lines)
    unreconciled = [n for n in _notes_of(db, req.id) if n.received_by_id is None]

    if not all_delivered or (not all_received and unreconciled):
        record_event(
            db, req,
            action=Action.RECEIVE.value,
            from_status=req.status,
            actor_id=actor_id,
            notes=f"Partial receipt {via}".strip(),
        )
        return []

    target = RequisitionStatus.RECEIVED if all_received else RequisitionStatus.PARTIALLY_RECEIVED
    return _close(db, req, target, actor_id, action=Action.RECEIVE.value, notes=via)


def close_out_requisition(db: Session, requisition_id: int, caller: Caller, reason: str = "") -> List[Requisition]:
    """
    Fulfilling side declares no further delivery notes will follow.
    Anything approved but not received becomes shortfall follow-ups.
    """
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.CLOSE_OUT, caller)

    complete = all(D(x.received_qty) >= D(x.approved_qty) for x in req.items or [])
    target = RequisitionStatus.RECEIVED if complete else RequisitionStatus.PARTIALLY_RECEIVED
    return _close(db, req, target, caller.user_id, action=Action.CLOSE_OUT.value, notes=reason)


def _close(
    db: Session,
    req: Requisition,
    target: RequisitionStatus,
    actor_id: Optional[int],
    *,
    action: str,
    notes: str = "",
) -> List[Requisition]:
    prev = move(req, target)
    req.closed_at = now_db()
    close_open_notes(db, req)
    db.flush()
    record_event(db, req, action=action, from_status=prev, actor_id=actor_id, notes=notes)
    return generate_shortfall(db, req, actor_id)


# ============================================================
# QUERIES
# ============================================================
def pending_receipts(db: Session, caller: Caller) -> List[dict]:
    """Lines shipped to the caller's warehouse and not yet fully received."""
    if caller.warehouse_id is None:
        return []
    rows = (
        db.query(RequisitionItem, Requisition)
        .join(Requisition, Requisition.id == RequisitionItem.requisition_id)
        .filter(
            Requisition.requesting_warehouse_id == int(caller.warehouse_id),
            Requisition.status.in_(AWAITING_RECEIPT),
            RequisitionItem.delivered_qty > RequisitionItem.received_qty,
        )
        .order_by(Requisition.id.asc(), RequisitionItem.line_no.asc())
        .all()
    )
    return [
        {
            "requisition_id": req.id,
            "requisition_number": req.requisition_number,
            "requisition_status": req.status.value,
            "priority": req.priority.value,
            "requisition_item_id": it.id,
            "drug_id": it.drug_id,
            "unit": it.unit,
            "delivered_qty": D(it.delivered_qty),
            "received_qty": D(it.received_qty),
            "pending_qty": D(it.delivered_qty) - D(it.received_qty),
        }
        for it, req in rows
    ]


def receiving_stats(db: Session, caller: Caller) -> dict:
    if caller.warehouse_id is None:
        return {}
    wid = int(caller.warehouse_id)
    today = today_db()

    def _count_req(*statuses) -> int:
        return int(
            db.query(func.count(Requisition.id))
            .filter(Requisition.requesting_warehouse_id == wid, Requisition.status.in_(statuses))
            .scalar() or 0
        )

    def _sessions(status: ReceivingSessionStatus) -> List[ReceivingSession]:
        return (
            db.query(ReceivingSession)
            .filter(ReceivingSession.warehouse_id == wid, ReceivingSession.status == status)
            .all()
        )

    completed_today = [
        s for s in _sessions(ReceivingSessionStatus.COMPLETED)
        if s.completed_at and s.completed_at.date() == today
    ]
    return {
        "warehouse_id": wid,
        "awaiting_receipt": _count_req(*AWAITING_RECEIPT),
        "received": _count_req(RequisitionStatus.RECEIVED),
        "partially_received": _count_req(RequisitionStatus.PARTIALLY_RECEIVED),
        "open_sessions": len(_sessions(ReceivingSessionStatus.OPEN)),
        "completed_sessions_today": len(completed_today),
    }
