import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.audit import AuditLog
from app.models.requisition import Requisition, RequisitionEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    req: Requisition,
    *,
    action: str,
    from_status: Optional[str],
    actor_id: Optional[int],
    notes: str = "",
) -> RequisitionEvent:
    """
    Timeline row for the requisition. Part of the requisition's own state,
    so it is written in the caller's transaction and rolls back with it.
    """
    ev = RequisitionEvent(
        requisition_id=req.id,
        action=action,
        from_status=str(getattr(from_status, "value", from_status)) if from_status else None,
        to_status=str(getattr(req.status, "value", req.status)),
        actor_id=actor_id,
        notes=notes or "",
    )
    db.add(ev)
    req.events.append(ev)
    emit_event(
        db,
        action=action,
        table_name="inv_requisitions",
        record_id=req.id,
        actor_id=actor_id,
        notes=notes,
        new_values={
            "requisition_number": req.requisition_number,
            "from_status": ev.from_status,
            "to_status": ev.to_status,
        },
    )
    return ev


def emit_event(
    db: Session,
    *,
    action: str,
    table_name: str,
    record_id: Any,
    actor_id: Optional[int],
    notes: Optional[str] = None,
    new_values: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Fire-and-forget audit / notification event.
    Runs in a SAVEPOINT: a failure is logged and discarded, never rolling
    back (or blocking) the surrounding transaction.
    """
    logger.info(
        "audit action=%s table=%s record=%s actor=%s",
        action, table_name, record_id, actor_id,
    )
    # core changes must surface their own errors, outside the savepoint
    db.flush()
    if not settings.AUDIT_ENABLED:
        return
    try:
        with db.begin_nested():
            db.add(
                AuditLog(
                    user_id=actor_id,
                    action=action,
                    table_name=table_name,
                    record_id=str(record_id),
                    notes=notes or None,
                    new_values=new_values,
                )
            )
    except Exception:
        logger.exception("Failed to log audit action=%s record=%s", action, record_id)
