from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Numeric,
    ForeignKey, Enum, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base

Qty = Numeric(14, 4)

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class ReceivingSessionStatus(str, enum.Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class ReceivedCondition(str, enum.Enum):
    GOOD = "GOOD"
    DAMAGED = "DAMAGED"
    EXPIRED = "EXPIRED"


class ReceivingSession(Base):
    """
    Operator-owned working set of physically received items.
    Rows exist for crash recovery; nothing outside the session changes
    until the session is completed.
    """
    __tablename__ = "inv_receiving_sessions"
    __table_args__ = (
        UniqueConstraint("session_number", name="uq_inv_receiving_sessions_number"),
        Index("ix_inv_receiving_sessions_operator", "operator_id", "started_at"),
        Index("ix_inv_receiving_sessions_wh_status", "warehouse_id", "status"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    session_number = Column(String(64), nullable=False, index=True)

    warehouse_id = Column(Integer, ForeignKey("inv_warehouses.id"), nullable=False)
    operator_id = Column(Integer, nullable=False)

    status = Column(
        Enum(ReceivingSessionStatus, name="inv_receiving_session_status"),
        nullable=False,
        default=ReceivingSessionStatus.OPEN,
    )
    notes = Column(Text, nullable=False, default="")

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    abandoned_at = Column(DateTime, nullable=True)

    warehouse = relationship("Warehouse")
    items = relationship(
        "ReceivingItem",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ReceivingItem.id",
    )

    @property
    def is_open(self) -> bool:
        return self.status == ReceivingSessionStatus.OPEN


class ReceivingItem(Base):
    __tablename__ = "inv_receiving_items"
    __table_args__ = (
        Index("ix_inv_receiving_items_session", "session_id"),
        Index("ix_inv_receiving_items_line", "requisition_item_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("inv_receiving_sessions.id", ondelete="CASCADE"), nullable=False)

    requisition_id = Column(Integer, ForeignKey("inv_requisitions.id"), nullable=False)
    requisition_item_id = Column(Integer, ForeignKey("inv_requisition_items.id"), nullable=False)
    delivery_note_id = Column(Integer, ForeignKey("inv_delivery_notes.id"), nullable=True)
    drug_id = Column(Integer, ForeignKey("inv_drugs.id"), nullable=False)

    quantity = Column(Qty, nullable=False, default=Decimal("0"))

    lot_no = Column(String(64), nullable=False, default="")
    expiry_date = Column(Date, nullable=True)
    manufacturer = Column(String(191), nullable=False, default="")
    condition = Column(
        Enum(ReceivedCondition, name="inv_received_condition"),
        nullable=False,
        default=ReceivedCondition.GOOD,
    )
    notes = Column(String(500), nullable=False, default="")

    # set when posted to the stock ledger
    stock_movement_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    session = relationship("ReceivingSession", back_populates="items")
    requisition_item = relationship("RequisitionItem")

    @property
    def idempotency_key(self) -> str:
        return f"RCV:{self.session_id}:{self.id}"
