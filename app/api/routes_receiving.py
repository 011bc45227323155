# FILE: app/api/routes_receiving.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.api.deps import current_caller, get_db
from app.models.receiving import ReceivingSession
from app.models.requisition import Requisition
from app.schemas.receiving import (
    CompletionOut,
    ReceivedItemIn,
    ReceivedItemUpdateIn,
    ReceivingItemOut,
    ReceivingSessionOut,
    SessionOpenIn,
)
from app.schemas.requisition import RequisitionOut
from app.services.receiving_service import (
    abandon_session,
    add_received_item,
    complete_session,
    get_session,
    open_session,
    pending_receipts,
    receiving_stats,
    remove_received_item,
    update_received_item,
)
from app.services.requisition_errors import (
    InvalidTransition,
    PermissionDenied,
    RequisitionError,
    ValidationError,
)
from app.services.requisition_guard import Caller
from app.utils.resp import err, err_from, ok

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/inventory/receiving", tags=["receiving"])


def _domain_err(e: RequisitionError):
    if isinstance(e, (PermissionDenied, InvalidTransition)):
        logger.info("Receiving request refused: %s", e)
    else:
        logger.warning("Receiving request failed (%s): %s", type(e).__name__, e)
    return err_from(e)


def _safe_err(e: Exception):
    if isinstance(e, IntegrityError):
        return err("Database constraint error (duplicate/invalid reference).", 400)
    logger.exception("Unhandled receiving error")
    return err(str(getattr(e, "detail", e)), getattr(e, "status_code", 500))


def _session_out(db: Session, session_id: int, status_code: int = 200):
    sess = (
        db.query(ReceivingSession)
        .options(selectinload(ReceivingSession.items))
        .filter(ReceivingSession.id == session_id)
        .populate_existing()
        .one()
    )
    return ok(ReceivingSessionOut.model_validate(sess).model_dump(), status_code=status_code)


# =========================
# QUEUE / STATS
# =========================
@router.get("/pending")
def pending_receipts_api(db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        return ok(pending_receipts(db, caller))
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/stats")
def receiving_stats_api(db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        return ok(receiving_stats(db, caller))
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


# =========================
# SESSIONS
# =========================
@router.post("/sessions")
def open_session_api(payload: SessionOpenIn, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        wid = payload.warehouse_id if payload.warehouse_id is not None else caller.warehouse_id
        if wid is None:
            raise ValidationError("warehouse_id is required")
        with db.begin():
            sess = open_session(db, wid, caller, notes=payload.notes)
        return _session_out(db, sess.id, status_code=201)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.get("/sessions/{session_id}")
def get_session_api(session_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        sess = get_session(db, session_id, caller)
        return ok(ReceivingSessionOut.model_validate(sess).model_dump())
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/sessions/{session_id}/items")
def add_item_api(
    session_id: int,
    payload: ReceivedItemIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            ri = add_received_item(db, session_id, payload, caller)
        return ok(ReceivingItemOut.model_validate(ri).model_dump(), status_code=201)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.put("/sessions/{session_id}/items/{item_id}")
def update_item_api(
    session_id: int,
    item_id: int,
    payload: ReceivedItemUpdateIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            ri = update_received_item(db, session_id, item_id, payload.quantity, caller)
        return ok(ReceivingItemOut.model_validate(ri).model_dump())
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.delete("/sessions/{session_id}/items/{item_id}")
def remove_item_api(
    session_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(current_caller),
):
    try:
        with db.begin():
            remove_received_item(db, session_id, item_id, caller)
        return _session_out(db, session_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/sessions/{session_id}/complete")
def complete_session_api(session_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        with db.begin():
            result = complete_session(db, session_id, caller)
            req_ids = [r.id for r in result.requisitions]
            followup_ids = [r.id for r in result.followups]

        def _reqs(ids):
            if not ids:
                return []
            rows = (
                db.query(Requisition)
                .options(selectinload(Requisition.items))
                .filter(Requisition.id.in_(ids))
                .order_by(Requisition.id.asc())
                .populate_existing()
                .all()
            )
            return [RequisitionOut.model_validate(x) for x in rows]

        sess = get_session(db, session_id)
        out = CompletionOut(
            session=ReceivingSessionOut.model_validate(sess),
            requisitions=_reqs(req_ids),
            followups=_reqs(followup_ids),
        )
        return ok(out.model_dump())
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)


@router.post("/sessions/{session_id}/abandon")
def abandon_session_api(session_id: int, db: Session = Depends(get_db), caller: Caller = Depends(current_caller)):
    try:
        with db.begin():
            abandon_session(db, session_id, caller)
        return _session_out(db, session_id)
    except RequisitionError as e:
        return _domain_err(e)
    except Exception as e:
        return _safe_err(e)
