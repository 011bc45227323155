# FILE: app/api/routes_requisitions.py
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.api.deps import current_caller, get_db
from app.models.requisition import Requisition
from app.schemas.requisition import (
    ApproveIn,
    CancelIn,
    ChainLinkOut,
    CloseOutIn,
    DeliveryNoteCreateIn,
    DeliveryNoteOut,
    DispatchIn,
    RejectIn,
    RequisitionCreateIn,
    RequisitionEventOut,
    RequisitionOut,
    RequisitionUpdateIn,
)
from app.services.delivery_note_service import (
    create_delivery_note,
    list_delivery_notes,
    mark_delivered,
    mark_in_transit,
)
from app.services.receiving_service import close_out_requisition
from app.services.requisition_errors import (
    InvalidTransition,
    PermissionDenied,
    RequisitionError,
)
from app.services.requisition_guard import Caller, allowed_actions, side_of
from app.services.requisition_service import (
    approve_requisition,
    cancel_requisition,
    create_requisition,
    get_visible_requisition,
    list_requisitions,
    reject_requisition,
    submit_requisition,
    update_requisition,
)
from app.services.shortfall_service import followups_of, origin_chain
from app.utils.resp import err, err_from, ok

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/inventory", tags=["requisitions"])


def _domain_err(e: RequisitionError):
    # wrong side / stale status are normal user-facing outcomes
    if isinstance(e, (PermissionDenied, InvalidTransition)):
        logger.info("Requisition request refused: %s", e)
    else:
        logger.warning("Requisition request failed (%s): %s", type(e).__name__, e)
    return err_from(e)


def _safe_err(e: Exception):
    if isinstance(e, IntegrityError):
        return err("Database constraint error (duplicate/invalid reference).", 400)
    logger.exception("Unhandled requisition error")
    return err(str(getattr(e, "detail", e)), getattr(e, "status_code", 500))


def _load(db: Session, requisition_id: int) -> Requisition:
    return (
        db.query(Requisition)
        .options(selectinload(Requisition.items))
        .filter(Requisition.id == requisition_id)
        .populate_existing()
        .one()
    )


def _out(db: Session, requisition_id: int, status_code: int = 200):
    return ok(RequisitionOut.model_validate(_load(db, requisition_id)).model_dump(), status_code=status_code)


# =========================
# QUEUES / READ
# =========================
@router.get("/requisitions")
def list_requisitions_api(
    direction: Optional[str] = Query(None, description="incoming | outgoing"),
    status: Optional[List[str]] = Query(None),
    type: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    origin_requisition_id: Optional[int] = Query(None),
    limit: int = Query(200, ge=1, le=500),
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        rows = list_requisitions(
            db,
            caller,
            direction=direction,
            status=status,
            type=type,
            priority=priority,
            origin_requisition_id=origin_requisition_id,
            limit=limit,
        )
        return ok([RequisitionOut.model_validate(x).model_dump() for x in rows])
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/requisitions/{requisition_id}")
def get_requisition_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        req = get_visible_requisition(db, requisition_id, caller)
        return ok(RequisitionOut.model_validate(req).model_dump())
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/requisitions/{requisition_id}/actions")
def requisition_actions_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        req = get_visible_requisition(db, requisition_id, caller)
        side = side_of(req, caller.warehouse_id)
        actions = sorted(a.value for a in allowed_actions(req.status, side))
        return ok({"side": side.value, "status": req.status.value, "actions": actions})
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/requisitions/{requisition_id}/timeline")
def requisition_timeline_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        req = get_visible_requisition(db, requisition_id, caller)
        return ok([RequisitionEventOut.model_validate(x).model_dump() for x in req.events])
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/requisitions/{requisition_id}/chain")
def requisition_chain_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        get_visible_requisition(db, requisition_id, caller)
        chain = origin_chain(db, requisition_id)
        return ok({
            "root_requisition_id": chain[-1].id,
            "ancestors": [ChainLinkOut.model_validate(x).model_dump() for x in chain[1:]],
            "followups": [ChainLinkOut.model_validate(x).model_dump() for x in followups_of(db, requisition_id)],
        })
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


# =========================
# REQUESTING SIDE
# =========================
@router.post("/requisitions")
def create_requisition_api(payload: RequisitionCreateIn, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        with db.begin():
            req = create_requisition(db, payload, caller)
        return _out(db, req.id, status_code=201)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.put("/requisitions/{requisition_id}")
def update_requisition_api(
    requisition_id: int,
    payload: RequisitionUpdateIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            update_requisition(db, requisition_id, payload, caller)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/submit")
def submit_requisition_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        with db.begin():
            submit_requisition(db, requisition_id, caller)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/cancel")
def cancel_requisition_api(
    requisition_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            cancel_requisition(db, requisition_id, payload.reason, caller)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


# =========================
# FULFILLING SIDE
# =========================
@router.post("/requisitions/{requisition_id}/approve")
def approve_requisition_api(
    requisition_id: int,
    payload: ApproveIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            approve_requisition(db, requisition_id, payload, caller)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/reject")
def reject_requisition_api(
    requisition_id: int,
    payload: RejectIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            reject_requisition(db, requisition_id, payload.reason, caller)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/requisitions/{requisition_id}/delivery-notes")
def list_delivery_notes_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        req = get_visible_requisition(db, requisition_id, caller)
        return ok([DeliveryNoteOut.model_validate(x).model_dump() for x in list_delivery_notes(db, req)])
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/delivery-notes")
def create_delivery_note_api(
    requisition_id: int,
    payload: DeliveryNoteCreateIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            note = create_delivery_note(db, requisition_id, payload, caller)
        return ok(DeliveryNoteOut.model_validate(note).model_dump(), status_code=201)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/in-transit")
def mark_in_transit_api(
    requisition_id: int,
    payload: DispatchIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            mark_in_transit(db, requisition_id, caller, carrier_name=payload.carrier_name)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/delivered")
def mark_delivered_api(requisition_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        with db.begin():
            mark_delivered(db, requisition_id, caller)
        return _out(db, requisition_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/requisitions/{requisition_id}/close-out")
def close_out_api(
    requisition_id: int,
    payload: CloseOutIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            followups = close_out_requisition(db, requisition_id, caller, reason=payload.reason)
            followup_ids = [x.id for x in followups]
        data = RequisitionOut.model_validate(_load(db, requisition_id)).model_dump()
        data["followup_ids"] = followup_ids
        return ok(data)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)
