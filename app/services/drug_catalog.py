# FILE: app/services/drug_catalog.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from app.models.catalog import Drug
from app.services.inventory_common import D
from app.services.requisition_errors import ValidationError


@dataclass(frozen=True)
class DrugInfo:
    id: int
    name: str
    unit: str
    unit_price: Decimal
    is_controlled: bool


class DrugCatalog(Protocol):
    def resolve(self, drug_id: int) -> DrugInfo: ...


class DbDrugCatalog:
    """Catalog lookup against the tenant's inv_drugs projection. Read-only."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, drug_id: int) -> DrugInfo:
        drug = self.db.query(Drug).filter(Drug.id == drug_id).first()
        if not drug or not drug.is_active:
            raise ValidationError(f"Invalid drug_id={drug_id}")
        return DrugInfo(
            id=int(drug.id),
            name=drug.name,
            unit=drug.unit or "",
            unit_price=D(drug.unit_price),
            is_controlled=bool(drug.is_controlled),
        )
