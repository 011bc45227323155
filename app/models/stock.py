from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Numeric,
    ForeignKey, Index, UniqueConstraint
)

from app.db.base import Base

Qty = Numeric(14, 4)


class StockMovement(Base):
    """
    Append-only stock ledger row written by the in-database ledger adapter.
    idempotency_key makes a retried post return the first movement.
    """
    __tablename__ = "inv_stock_movements"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_inv_stock_movements_idem"),
        Index("ix_inv_stock_movements_wh_time", "warehouse_id", "txn_time"),
        Index("ix_inv_stock_movements_drug_time", "drug_id", "txn_time"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)
    warehouse_id = Column(Integer, ForeignKey("inv_warehouses.id"), nullable=False)
    drug_id = Column(Integer, ForeignKey("inv_drugs.id"), nullable=False)

    txn_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    txn_type = Column(String(50), nullable=False)  # RECEIVE / ISSUE
    ref_type = Column(String(50), nullable=False, default="")
    ref_id = Column(Integer, nullable=True)

    quantity_change = Column(Qty, nullable=False)
    lot_no = Column(String(64), nullable=False, default="")
    expiry_date = Column(Date, nullable=True)
    condition = Column(String(16), nullable=False, default="GOOD")

    idempotency_key = Column(String(100), nullable=False)
    remark = Column(String(1000), nullable=False, default="")
    user_id = Column(Integer, nullable=True)
