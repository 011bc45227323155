from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Text,
    Index,
)

from app.db.base import Base


class AuditLog(Base):
    """
    Per-tenant audit / notification log.
    Every requisition status transition writes here (best effort).
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_record", "table_name", "record_id"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True)  # system jobs
    action = Column(String(32), nullable=False)  # SUBMIT / APPROVE / RECEIVE ...

    table_name = Column(String(64), nullable=False)
    record_id = Column(String(64), nullable=False)

    notes = Column(Text, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
