from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from app.db.base import Base


class DocNumberSeries(Base):
    __tablename__ = "inv_doc_number_series"
    __table_args__ = (
        UniqueConstraint("key", "date_key", name="uq_inv_doc_number_series_key_date"),
    )

    id = Column(Integer, primary_key=True)
    key = Column(String(30), nullable=False)         # REQ / DN / RCV
    date_key = Column(Integer, nullable=False)       # YYYYMMDD
    next_seq = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
