from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Numeric,
    ForeignKey, Enum, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base

Qty = Numeric(14, 4)
Money = Numeric(14, 4)

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class RequisitionType(str, enum.Enum):
    REGULAR = "REGULAR"
    EMERGENCY = "EMERGENCY"
    SCHEDULED = "SCHEDULED"
    RETURN = "RETURN"


class RequisitionPriority(str, enum.Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RequisitionStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    PREPARING = "PREPARING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RECEIVED = "RECEIVED"
    PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"


TERMINAL_STATUSES = frozenset({
    RequisitionStatus.REJECTED,
    RequisitionStatus.CANCELLED,
    RequisitionStatus.RECEIVED,
    RequisitionStatus.PARTIALLY_RECEIVED,
})


class DeliveryNoteStatus(str, enum.Enum):
    PREPARED = "PREPARED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RECEIVED = "RECEIVED"
    PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"


class Requisition(Base):
    """
    Requesting warehouse raises requisition -> fulfilling warehouse approves,
    ships one or more delivery notes -> requesting warehouse receives.
    Never deleted: REJECTED / CANCELLED are terminal statuses.
    """
    __tablename__ = "inv_requisitions"
    __table_args__ = (
        UniqueConstraint("requisition_number", name="uq_inv_requisitions_number"),
        Index(
            "ix_inv_requisitions_pair_status",
            "requesting_warehouse_id",
            "fulfilling_warehouse_id",
            "status",
        ),
        Index("ix_inv_requisitions_status_date", "status", "requisition_date"),
        Index("ix_inv_requisitions_origin", "origin_requisition_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    requisition_number = Column(String(64), nullable=False, index=True)
    requisition_date = Column(Date, nullable=False, default=date.today)
    required_date = Column(Date, nullable=True)

    type = Column(Enum(RequisitionType, name="inv_requisition_type"), nullable=False, default=RequisitionType.REGULAR)
    priority = Column(
        Enum(RequisitionPriority, name="inv_requisition_priority"),
        nullable=False,
        default=RequisitionPriority.NORMAL,
    )
    status = Column(
        Enum(RequisitionStatus, name="inv_requisition_status"),
        nullable=False,
        default=RequisitionStatus.DRAFT,
    )

    # stock moves FULFILLING -> REQUESTING
    fulfilling_warehouse_id = Column(Integer, ForeignKey("inv_warehouses.id"), nullable=False, index=True)
    requesting_warehouse_id = Column(Integer, ForeignKey("inv_warehouses.id"), nullable=False, index=True)

    # set only on shortfall follow-ups; immutable
    origin_requisition_id = Column(Integer, ForeignKey("inv_requisitions.id"), nullable=True)

    purpose = Column(String(255), nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    rejection_reason = Column(String(500), nullable=False, default="")
    cancel_reason = Column(String(255), nullable=False, default="")

    # user ids come from the identity service; no local users table
    requester_id = Column(Integer, nullable=True, index=True)
    submitted_by_id = Column(Integer, nullable=True)
    approved_by_id = Column(Integer, nullable=True)
    rejected_by_id = Column(Integer, nullable=True)
    cancelled_by_id = Column(Integer, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    fulfilling_warehouse = relationship("Warehouse", foreign_keys=[fulfilling_warehouse_id])
    requesting_warehouse = relationship("Warehouse", foreign_keys=[requesting_warehouse_id])

    origin = relationship("Requisition", remote_side=[id], foreign_keys=[origin_requisition_id])

    items = relationship(
        "RequisitionItem",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="RequisitionItem.line_no",
    )
    delivery_notes = relationship(
        "DeliveryNote",
        back_populates="requisition",
        order_by="DeliveryNote.id",
    )
    events = relationship(
        "RequisitionEvent",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="RequisitionEvent.id",
    )

    @property
    def warehouse_pair(self) -> tuple:
        return (self.requesting_warehouse_id, self.fulfilling_warehouse_id)

    def __repr__(self) -> str:
        return f"<Requisition id={self.id} no={self.requisition_number} status={self.status}>"


class RequisitionItem(Base):
    __tablename__ = "inv_requisition_items"
    __table_args__ = (
        Index("ix_inv_requisition_items_req", "requisition_id"),
        Index("ix_inv_requisition_items_drug", "drug_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    requisition_id = Column(Integer, ForeignKey("inv_requisitions.id", ondelete="CASCADE"), nullable=False)
    line_no = Column(Integer, nullable=False, default=1)

    drug_id = Column(Integer, ForeignKey("inv_drugs.id"), nullable=False)
    unit = Column(String(32), nullable=False, default="")

    # 0 <= received <= delivered <= approved <= requested
    requested_qty = Column(Qty, nullable=False, default=Decimal("0"))
    approved_qty = Column(Qty, nullable=False, default=Decimal("0"))
    delivered_qty = Column(Qty, nullable=False, default=Decimal("0"))
    received_qty = Column(Qty, nullable=False, default=Decimal("0"))

    # snapshot at creation
    unit_price = Column(Money, nullable=False, default=Decimal("0"))

    remarks = Column(String(255), nullable=False, default="")

    requisition = relationship("Requisition", back_populates="items")
    drug = relationship("Drug")


class RequisitionEvent(Base):
    """
    Timeline row per status transition (who / when / from -> to / why).
    """
    __tablename__ = "inv_requisition_events"
    __table_args__ = (
        Index("ix_inv_requisition_events_req", "requisition_id", "created_at"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    requisition_id = Column(Integer, ForeignKey("inv_requisitions.id", ondelete="CASCADE"), nullable=False)

    action = Column(String(32), nullable=False)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)

    actor_id = Column(Integer, nullable=True)
    notes = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    requisition = relationship("Requisition", back_populates="events")


class DeliveryNote(Base):
    """
    One shipment against an approved requisition. Several notes may split a
    single approval into sequential shipments.
    """
    __tablename__ = "inv_delivery_notes"
    __table_args__ = (
        UniqueConstraint("note_number", name="uq_inv_delivery_notes_number"),
        Index("ix_inv_delivery_notes_req", "requisition_id"),
        Index("ix_inv_delivery_notes_status", "status"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    note_number = Column(String(64), nullable=False, index=True)
    requisition_id = Column(Integer, ForeignKey("inv_requisitions.id"), nullable=False)

    status = Column(
        Enum(DeliveryNoteStatus, name="inv_delivery_note_status"),
        nullable=False,
        default=DeliveryNoteStatus.PREPARED,
    )

    carrier_name = Column(String(120), nullable=False, default="")
    notes = Column(Text, nullable=False, default="")

    prepared_by_id = Column(Integer, nullable=True)
    dispatched_by_id = Column(Integer, nullable=True)
    received_by_id = Column(Integer, nullable=True)

    prepared_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    requisition = relationship("Requisition", back_populates="delivery_notes")
    items = relationship(
        "DeliveryNoteItem",
        back_populates="delivery_note",
        cascade="all, delete-orphan",
        order_by="DeliveryNoteItem.id",
    )


class DeliveryNoteItem(Base):
    __tablename__ = "inv_delivery_note_items"
    __table_args__ = (
        Index("ix_inv_delivery_note_items_note", "delivery_note_id"),
        Index("ix_inv_delivery_note_items_line", "requisition_item_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    delivery_note_id = Column(Integer, ForeignKey("inv_delivery_notes.id", ondelete="CASCADE"), nullable=False)
    requisition_item_id = Column(Integer, ForeignKey("inv_requisition_items.id"), nullable=False)
    drug_id = Column(Integer, ForeignKey("inv_drugs.id"), nullable=False)

    delivered_qty = Column(Qty, nullable=False, default=Decimal("0"))
    received_qty = Column(Qty, nullable=False, default=Decimal("0"))

    lot_no = Column(String(64), nullable=False, default="")
    expiry_date = Column(Date, nullable=True)
    remarks = Column(String(255), nullable=False, default="")

    delivery_note = relationship("DeliveryNote", back_populates="items")
    requisition_item = relationship("RequisitionItem")
