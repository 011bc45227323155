# FILE: app/schemas/receiving.py
from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict

from app.models.receiving import ReceivedCondition, ReceivingSessionStatus
from app.schemas.requisition import RequisitionOut


class SessionOpenIn(BaseModel):
    # defaults to the caller's warehouse
    warehouse_id: Optional[int] = None
    notes: str = ""


class ReceivedItemIn(BaseModel):
    requisition_item_id: int
    requisition_id: Optional[int] = None
    delivery_note_id: Optional[int] = None
    drug_id: Optional[int] = None

    # positivity is checked by the service (domain ValidationError)
    quantity: Decimal = Field(..., decimal_places=4)

    lot_no: str = ""
    expiry_date: Optional[date] = None
    manufacturer: str = ""
    condition: ReceivedCondition = ReceivedCondition.GOOD
    notes: str = Field("", max_length=500)


class ReceivedItemUpdateIn(BaseModel):
    quantity: Decimal = Field(..., decimal_places=4)


class ReceivingItemOut(BaseModel):
    id: int
    session_id: int
    requisition_id: int
    requisition_item_id: int
    delivery_note_id: Optional[int]
    drug_id: int
    quantity: Decimal
    lot_no: str
    expiry_date: Optional[date]
    manufacturer: str
    condition: ReceivedCondition
    notes: str
    stock_movement_id: Optional[int]

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ReceivingSessionOut(BaseModel):
    id: int
    session_number: str
    warehouse_id: int
    operator_id: int
    status: ReceivingSessionStatus
    notes: str
    started_at: datetime
    completed_at: Optional[datetime]
    abandoned_at: Optional[datetime]

    items: List[ReceivingItemOut] = []

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class CompletionOut(BaseModel):
    session: ReceivingSessionOut
    requisitions: List[RequisitionOut] = []
    followups: List[RequisitionOut] = []

    model_config = ConfigDict(from_attributes=True)
