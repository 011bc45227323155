# app/models/__init__.py
from .catalog import Drug, Warehouse
from .requisition import (
    DeliveryNote,
    DeliveryNoteItem,
    DeliveryNoteStatus,
    Requisition,
    RequisitionEvent,
    RequisitionItem,
    RequisitionPriority,
    RequisitionStatus,
    RequisitionType,
)
from .receiving import (
    ReceivedCondition,
    ReceivingItem,
    ReceivingSession,
    ReceivingSessionStatus,
)
from .stock import StockMovement
from .number_series import DocNumberSeries
from .audit import AuditLog

__all__ = [
    "Drug",
    "Warehouse",
    "DeliveryNote",
    "DeliveryNoteItem",
    "DeliveryNoteStatus",
    "Requisition",
    "RequisitionEvent",
    "RequisitionItem",
    "RequisitionPriority",
    "RequisitionStatus",
    "RequisitionType",
    "ReceivedCondition",
    "ReceivingItem",
    "ReceivingSession",
    "ReceivingSessionStatus",
    "StockMovement",
    "DocNumberSeries",
    "AuditLog",
]
