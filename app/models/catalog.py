from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String
from sqlalchemy.sql import func

from app.db.base import Base

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class Warehouse(Base):
    """
    Local projection of the hospital's warehouse master.
    Maintained by the master-data screens; read-only here.
    """
    __tablename__ = "inv_warehouses"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(191), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<Warehouse id={self.id} code={self.code}>"


class Drug(Base):
    """
    Local projection of the drug catalog (identity, unit, price).
    """
    __tablename__ = "inv_drugs"
    __table_args__ = MYSQL_ARGS

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    unit = Column(String(32), nullable=False, default="")
    unit_price = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))

    is_controlled = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<Drug id={self.id} code={self.code}>"
