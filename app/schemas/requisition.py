# FILE: app/schemas/requisition.py
from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict

from app.models.requisition import (
    DeliveryNoteStatus,
    RequisitionPriority,
    RequisitionStatus,
    RequisitionType,
)


# -------------------------
# REQUISITION
# -------------------------
class RequisitionItemIn(BaseModel):
    drug_id: int
    requested_qty: Decimal = Field(..., gt=0, decimal_places=4)
    remarks: str = ""


class RequisitionCreateIn(BaseModel):
    type: str = "REGULAR"
    priority: str = "NORMAL"
    fulfilling_warehouse_id: int
    # defaults to the caller's warehouse
    requesting_warehouse_id: Optional[int] = None

    required_date: Optional[date] = None
    purpose: str = ""
    notes: str = ""
    items: List[RequisitionItemIn] = []


class RequisitionUpdateIn(BaseModel):
    priority: Optional[str] = None
    required_date: Optional[date] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None


class ApproveItemIn(BaseModel):
    requisition_item_id: int
    approved_qty: Decimal = Field(..., ge=0, decimal_places=4)


class ApproveIn(BaseModel):
    items: Optional[List[ApproveItemIn]] = None
    notes: str = ""


class RejectIn(BaseModel):
    # blank is checked by the service so the error is a domain ValidationError
    reason: Optional[str] = Field(None, max_length=500)


class CancelIn(BaseModel):
    reason: str = Field("", max_length=255)


class CloseOutIn(BaseModel):
    reason: str = Field("", max_length=255)


class RequisitionItemOut(BaseModel):
    id: int
    requisition_id: int
    line_no: int
    drug_id: int
    unit: str
    requested_qty: Decimal
    approved_qty: Decimal
    delivered_qty: Decimal
    received_qty: Decimal
    unit_price: Decimal
    remarks: str

    model_config = ConfigDict(from_attributes=True)


class RequisitionOut(BaseModel):
    id: int
    requisition_number: str
    requisition_date: date
    required_date: Optional[date]

    type: RequisitionType
    priority: RequisitionPriority
    status: RequisitionStatus

    fulfilling_warehouse_id: int
    requesting_warehouse_id: int
    origin_requisition_id: Optional[int]

    purpose: str
    notes: str
    rejection_reason: str
    cancel_reason: str

    requester_id: Optional[int]
    submitted_by_id: Optional[int]
    approved_by_id: Optional[int]
    rejected_by_id: Optional[int]
    cancelled_by_id: Optional[int]

    submitted_at: Optional[datetime]
    approved_at: Optional[datetime]
    rejected_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    closed_at: Optional[datetime]

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    items: List[RequisitionItemOut] = []

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RequisitionEventOut(BaseModel):
    id: int
    requisition_id: int
    action: str
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[int]
    notes: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ChainLinkOut(BaseModel):
    id: int
    requisition_number: str
    type: RequisitionType
    status: RequisitionStatus
    origin_requisition_id: Optional[int]

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# -------------------------
# DELIVERY NOTE
# -------------------------
class DeliveryNoteItemIn(BaseModel):
    requisition_item_id: int
    delivered_qty: Decimal = Field(..., gt=0, decimal_places=4)
    lot_no: str = ""
    expiry_date: Optional[date] = None
    remarks: str = ""


class DeliveryNoteCreateIn(BaseModel):
    carrier_name: str = ""
    notes: str = ""
    items: List[DeliveryNoteItemIn] = []


class DispatchIn(BaseModel):
    carrier_name: str = ""


class DeliveryNoteItemOut(BaseModel):
    id: int
    delivery_note_id: int
    requisition_item_id: int
    drug_id: int
    delivered_qty: Decimal
    received_qty: Decimal
    lot_no: str
    expiry_date: Optional[date]
    remarks: str

    model_config = ConfigDict(from_attributes=True)


class DeliveryNoteOut(BaseModel):
    id: int
    note_number: str
    requisition_id: int
    status: DeliveryNoteStatus
    carrier_name: str
    notes: str

    prepared_by_id: Optional[int]
    dispatched_by_id: Optional[int]
    received_by_id: Optional[int]
    prepared_at: Optional[datetime]
    dispatched_at: Optional[datetime]
    delivered_at: Optional[datetime]
    received_at: Optional[datetime]

    items: List[DeliveryNoteItemOut] = []

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
