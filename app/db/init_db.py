# app/db/init_db.py
from __future__ import annotations

import argparse
from decimal import Decimal
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.base import Base, import_models
from app.db.session import build_engine

DEMO_WAREHOUSES = [
    ("CENTRAL", "Central Pharmacy Store"),
    ("ICU", "ICU Sub-store"),
    ("OPD", "OPD Pharmacy"),
]

DEMO_DRUGS = [
    ("PCM500", "Paracetamol 500mg Tablet", "TAB", Decimal("1.20")),
    ("AMOX250", "Amoxicillin 250mg Capsule", "CAP", Decimal("3.50")),
    ("NS500", "Sodium Chloride 0.9% 500ml", "BTL", Decimal("28.00")),
]


def print_tables(eng: Engine) -> set:
    names = set(inspect(eng).get_table_names())
    print("Existing tables:", sorted(names))
    return names


def seed_demo_masters(db: Session) -> None:
    """
    Insert ONLY missing warehouse / drug codes; safe to run multiple times.
    """
    from app.models.catalog import Drug, Warehouse

    for code, name in DEMO_WAREHOUSES:
        if not db.query(Warehouse).filter(Warehouse.code == code).first():
            db.add(Warehouse(code=code, name=name, is_active=True))

    for code, name, unit, price in DEMO_DRUGS:
        if not db.query(Drug).filter(Drug.code == code).first():
            db.add(Drug(code=code, name=name, unit=unit, unit_price=price, is_active=True))


def run(fresh: bool = False, seed: bool = False, db_uri: Optional[str] = None) -> None:
    import_models()
    engine = build_engine(db_uri or settings.SQLALCHEMY_DATABASE_URI)

    if fresh:
        print("WARNING: Dropping ALL tables (dev only) …")
        Base.metadata.drop_all(bind=engine)

    print("Creating all missing tables …")
    Base.metadata.create_all(bind=engine)
    print_tables(engine)

    if not seed:
        return
    try:
        with Session(engine) as db:
            seed_demo_masters(db)
            db.commit()
            print("Demo warehouses / drugs seeded (missing codes inserted).")
    except SQLAlchemyError as e:
        print("Seeding failed:", e)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Initialize DB (create tables, optionally seed demo masters).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Insert demo warehouses and drugs.",
    )
    parser.add_argument("--db-uri", default=None, help="Override the database URL.")
    args = parser.parse_args()
    run(fresh=args.fresh, seed=args.seed, db_uri=args.db_uri)
