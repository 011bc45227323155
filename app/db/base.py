# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All tenant-level tables (requisitions, delivery notes, receiving, ledger) inherit from this."""
    pass


def import_models() -> None:
    # Import all tenant models so metadata is complete for create_all()
    from app.models import (  # noqa: F401
        audit,
        catalog,
        number_series,
        receiving,
        requisition,
        stock,
    )
