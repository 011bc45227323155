# FILE: app/services/stock_ledger.py
from __future__ import annotations

import logging
import time
from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Protocol, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.stock import StockMovement
from app.services.inventory_common import D, now_db
from app.services.requisition_errors import LedgerUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StockLedger(Protocol):
    def post_receive(
        self,
        *,
        warehouse_id: int,
        drug_id: int,
        quantity: Decimal,
        lot_no: str,
        expiry_date: Optional[date],
        condition: str,
        reference_requisition_id: int,
        idempotency_key: str,
        user_id: Optional[int] = None,
    ) -> int: ...

    def post_issue(
        self,
        *,
        warehouse_id: int,
        drug_id: int,
        quantity: Decimal,
        lot_no: str,
        expiry_date: Optional[date],
        reference_requisition_id: int,
        idempotency_key: str,
        user_id: Optional[int] = None,
    ) -> int: ...


class DbStockLedger:
    """
    Ledger adapter writing inv_stock_movements in the tenant database.
    Receipts are positive, issues negative.
    Posting the same idempotency_key twice returns the first movement id.
    """

    def __init__(self, db: Session):
        self.db = db

    def post_receive(
        self,
        *,
        warehouse_id: int,
        drug_id: int,
        quantity: Decimal,
        lot_no: str,
        expiry_date: Optional[date],
        condition: str,
        reference_requisition_id: int,
        idempotency_key: str,
        user_id: Optional[int] = None,
    ) -> int:
        return self._post(
            txn_type="RECEIVE",
            warehouse_id=warehouse_id,
            drug_id=drug_id,
            quantity_change=D(quantity),
            lot_no=lot_no,
            expiry_date=expiry_date,
            condition=str(getattr(condition, "value", condition)),
            reference_requisition_id=reference_requisition_id,
            idempotency_key=idempotency_key,
            remark=f"Requisition receipt ({idempotency_key})",
            user_id=user_id,
        )

    def post_issue(
        self,
        *,
        warehouse_id: int,
        drug_id: int,
        quantity: Decimal,
        lot_no: str,
        expiry_date: Optional[date],
        reference_requisition_id: int,
        idempotency_key: str,
        user_id: Optional[int] = None,
    ) -> int:
        return self._post(
            txn_type="ISSUE",
            warehouse_id=warehouse_id,
            drug_id=drug_id,
            quantity_change=-D(quantity),
            lot_no=lot_no,
            expiry_date=expiry_date,
            condition="GOOD",
            reference_requisition_id=reference_requisition_id,
            idempotency_key=idempotency_key,
            remark=f"Requisition issue ({idempotency_key})",
            user_id=user_id,
        )

    def _post(self, *, txn_type: str, reference_requisition_id: int, lot_no: str, **fields) -> int:
        key = fields["idempotency_key"]
        existing = (
            self.db.query(StockMovement)
            .filter(StockMovement.idempotency_key == key)
            .first()
        )
        if existing:
            logger.info("Stock post replayed key=%s movement=%s", key, existing.id)
            return int(existing.id)

        mv = StockMovement(
            txn_time=now_db(),
            txn_type=txn_type,
            ref_type="REQUISITION",
            ref_id=reference_requisition_id,
            lot_no=lot_no or "",
            **fields,
        )
        self.db.add(mv)
        self.db.flush()
        return int(mv.id)


def with_retry(
    fn: Callable[[], T],
    *,
    what: str,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn, retrying transient ledger errors with exponential backoff.
    fn must be idempotent (same idempotency key on every attempt).
    """
    max_attempts = max(1, int(attempts or settings.LEDGER_MAX_ATTEMPTS))
    delay = float(settings.LEDGER_RETRY_BACKOFF_SECONDS if backoff is None else backoff)

    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except (LedgerUnavailable, OperationalError, ConnectionError, TimeoutError) as e:
            if attempt >= max_attempts:
                logger.error("%s failed after %s attempts: %s", what, attempt, e)
                raise LedgerUnavailable(f"Stock ledger unavailable: {e}") from e
            logger.warning("%s failed (attempt %s/%s): %s", what, attempt, max_attempts, e)
            if delay > 0:
                sleep(delay * (2 ** (attempt - 1)))
        except SQLAlchemyError as e:
            logger.error("%s failed: %s", what, e)
            raise LedgerUnavailable(f"Stock ledger error: {e}") from e

    raise LedgerUnavailable(f"{what} did not run")
