# FILE: app/services/delivery_note_service.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from app.models.requisition import (
    DeliveryNote,
    DeliveryNoteItem,
    DeliveryNoteStatus,
    Requisition,
    RequisitionStatus,
)
from app.services.audit_logger import emit_event, record_event
from app.services.inventory_common import D, check_qty_scale, fmt_qty, now_db
from app.services.number_series import next_doc_number
from app.services.requisition_errors import QuantityViolation, ValidationError
from app.services.requisition_guard import Action, Caller, check_transition, move
from app.services.requisition_service import check_invariants, lock_requisition
from app.services.stock_ledger import DbStockLedger, StockLedger, with_retry

logger = logging.getLogger(__name__)


def create_delivery_note(
    db: Session,
    requisition_id: int,
    payload,
    caller: Caller,
    ledger: Optional[StockLedger] = None,
) -> DeliveryNote:
    """
    Fulfilling side ships part (or all) of the approved quantity.
    Each line adds into RequisitionItem.delivered_qty, bounded by approved_qty,
    and is issued out of the fulfilling warehouse stock (key "DN:<note>:<line>").
    """
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.CREATE_DELIVERY_NOTE, caller)

    lines = list(getattr(payload, "items", None) or [])
    if not lines:
        raise ValidationError("Delivery note must have at least 1 line.")

    item_map = {int(x.id): x for x in req.items}

    # several lines for the same requisition item are summed before the bound check
    adding: Dict[int, Decimal] = {}
    for li in lines:
        qty = check_qty_scale(li.delivered_qty, "delivered_qty")
        if qty <= 0:
            raise ValidationError("delivered_qty must be > 0")
        rid = int(li.requisition_item_id)
        if rid not in item_map:
            raise ValidationError(f"Invalid requisition_item_id={rid}")
        adding[rid] = adding.get(rid, D(0)) + qty

    for rid, qty in adding.items():
        it = item_map[rid]
        remaining = D(it.approved_qty) - D(it.delivered_qty)
        if qty > remaining:
            raise QuantityViolation(
                f"Delivered qty exceeds remaining approved for requisition_item_id={rid}. "
                f"Remaining {fmt_qty(remaining)}, declared {fmt_qty(qty)}."
            )

    note = DeliveryNote(
        note_number=next_doc_number(db, "DN"),
        requisition_id=req.id,
        status=DeliveryNoteStatus.PREPARED,
        carrier_name=(getattr(payload, "carrier_name", "") or "").strip(),
        notes=getattr(payload, "notes", "") or "",
        prepared_by_id=caller.user_id,
        prepared_at=now_db(),
    )
    db.add(note)
    db.flush()

    for li in lines:
        it = item_map[int(li.requisition_item_id)]
        note.items.append(
            DeliveryNoteItem(
                requisition_item_id=it.id,
                drug_id=it.drug_id,
                delivered_qty=D(li.delivered_qty),
                received_qty=D(0),
                lot_no=(getattr(li, "lot_no", "") or "").strip(),
                expiry_date=getattr(li, "expiry_date", None),
                remarks=getattr(li, "remarks", "") or "",
            )
        )

    for rid, qty in adding.items():
        it = item_map[rid]
        it.delivered_qty = D(it.delivered_qty) + qty

    check_invariants(req)
    db.flush()

    ledger = ledger or DbStockLedger(db)
    for nl in note.items:
        key = f"DN:{note.id}:{nl.id}"
        with_retry(
            lambda: ledger.post_issue(
                warehouse_id=req.fulfilling_warehouse_id,
                drug_id=nl.drug_id,
                quantity=D(nl.delivered_qty),
                lot_no=nl.lot_no,
                expiry_date=nl.expiry_date,
                reference_requisition_id=req.id,
                idempotency_key=key,
                user_id=caller.user_id,
            ),
            what=f"post_issue {key}",
        )

    if req.status == RequisitionStatus.APPROVED:
        prev = move(req, RequisitionStatus.PREPARING)
        db.flush()
        record_event(
            db, req,
            action=Action.CREATE_DELIVERY_NOTE.value,
            from_status=prev,
            actor_id=caller.user_id,
            notes=f"Delivery note {note.note_number}",
        )
    else:
        db.flush()
        emit_event(
            db,
            action=Action.CREATE_DELIVERY_NOTE.value,
            table_name="inv_delivery_notes",
            record_id=note.id,
            actor_id=caller.user_id,
            notes=f"Delivery note {note.note_number} for {req.requisition_number}",
        )

    logger.info(
        "Delivery note %s created for %s (%s lines)",
        note.note_number, req.requisition_number, len(lines),
    )
    return note


def mark_in_transit(db: Session, requisition_id: int, caller: Caller, carrier_name: str = "") -> Requisition:
    """Carrier picked up: PREPARING -> IN_TRANSIT, every PREPARED note goes with it."""
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.MARK_IN_TRANSIT, caller)

    now = now_db()
    carrier = (carrier_name or "").strip()
    for note in _notes(db, req.id):
        if note.status == DeliveryNoteStatus.PREPARED:
            note.status = DeliveryNoteStatus.IN_TRANSIT
            note.dispatched_by_id = caller.user_id
            note.dispatched_at = now
            if carrier:
                note.carrier_name = carrier

    prev = move(req, RequisitionStatus.IN_TRANSIT)
    db.flush()
    record_event(db, req, action=Action.MARK_IN_TRANSIT.value, from_status=prev, actor_id=caller.user_id, notes=carrier)
    return req


def mark_delivered(db: Session, requisition_id: int, caller: Caller) -> Requisition:
    """Arrival at the requesting warehouse: IN_TRANSIT -> DELIVERED."""
    req = lock_requisition(db, requisition_id)
    check_transition(req, Action.MARK_DELIVERED, caller)

    now = now_db()
    for note in _notes(db, req.id):
        if note.status == DeliveryNoteStatus.IN_TRANSIT:
            note.status = DeliveryNoteStatus.DELIVERED
            note.delivered_at = now

    prev = move(req, RequisitionStatus.DELIVERED)
    db.flush()
    record_event(db, req, action=Action.MARK_DELIVERED.value, from_status=prev, actor_id=caller.user_id)
    return req


def list_delivery_notes(db: Session, req: Requisition) -> List[DeliveryNote]:
    return (
        db.query(DeliveryNote)
        .options(selectinload(DeliveryNote.items))
        .filter(DeliveryNote.requisition_id == req.id)
        .order_by(DeliveryNote.id.asc())
        .all()
    )


def _notes(db: Session, requisition_id: int) -> List[DeliveryNote]:
    return (
        db.query(DeliveryNote)
        .filter(DeliveryNote.requisition_id == requisition_id)
        .order_by(DeliveryNote.id.asc())
        .with_for_update()
        .all()
    )


def refresh_note_status(note: DeliveryNote) -> None:
    """RECEIVED when every line is fully received, PARTIALLY_RECEIVED when some is."""
    lines = note.items or []
    if not lines:
        return
    got = [D(x.received_qty) for x in lines]
    if all(D(x.received_qty) >= D(x.delivered_qty) for x in lines):
        note.status = DeliveryNoteStatus.RECEIVED
    elif any(g > 0 for g in got):
        note.status = DeliveryNoteStatus.PARTIALLY_RECEIVED


def close_open_notes(db: Session, req: Requisition) -> None:
    """On close-out a note with anything missing ends PARTIALLY_RECEIVED."""
    for note in _notes(db, req.id):
        if note.status in (DeliveryNoteStatus.RECEIVED, DeliveryNoteStatus.PARTIALLY_RECEIVED):
            continue
        if all(D(x.received_qty) >= D(x.delivered_qty) for x in note.items or []):
            note.status = DeliveryNoteStatus.RECEIVED
        else:
            note.status = DeliveryNoteStatus.PARTIALLY_RECEIVED
