"""
Pytest fixtures for the requisition test suite.

Provides:
- a file-backed SQLite tenant database per test (savepoints enabled)
- warehouse / drug / caller fixtures
- factories that drive a requisition through its lifecycle

Environment Variables:
- none; every test builds its own database under tmp_path.
"""
from decimal import Decimal
from types import SimpleNamespace
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from app.core.logging_config import configure_logging
from app.db.base import Base, import_models
from app.db.session import build_engine, make_session_factory
from app.models.catalog import Drug, Warehouse
from app.services.delivery_note_service import (
    create_delivery_note,
    mark_delivered,
    mark_in_transit,
)
from app.services.receiving_service import (
    add_received_item,
    complete_session,
    open_session,
)
from app.services.requisition_guard import Caller
from app.services.requisition_service import (
    approve_requisition,
    create_requisition,
    submit_requisition,
)

CENTRAL_USER = 11
WARD_USER = 21
WARD_USER_2 = 22
OTHER_USER = 31


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    configure_logging(level="DEBUG")
    yield


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    import_models()
    eng = build_engine(f"sqlite:///{tmp_path / 'tenant.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# Masters
# =============================================================================


@pytest.fixture
def warehouses(db):
    """central fulfils, ward requests, other is a bystander."""
    central = Warehouse(code="CENTRAL", name="Central Pharmacy Store", is_active=True)
    ward = Warehouse(code="WARD3", name="Ward 3 Sub-store", is_active=True)
    other = Warehouse(code="ICU", name="ICU Sub-store", is_active=True)
    closed = Warehouse(code="OLD", name="Closed Store", is_active=False)
    db.add_all([central, ward, other, closed])
    db.commit()
    return SimpleNamespace(central=central, ward=ward, other=other, closed=closed)


@pytest.fixture
def drugs(db):
    pcm = Drug(code="PCM500", name="Paracetamol 500mg", unit="TAB", unit_price=Decimal("1.20"))
    amox = Drug(code="AMOX250", name="Amoxicillin 250mg", unit="CAP", unit_price=Decimal("3.50"))
    retired = Drug(code="OLD1", name="Withdrawn product", unit="TAB", is_active=False)
    db.add_all([pcm, amox, retired])
    db.commit()
    return SimpleNamespace(pcm=pcm, amox=amox, retired=retired)


@pytest.fixture
def callers(warehouses):
    return SimpleNamespace(
        central=Caller(CENTRAL_USER, warehouses.central.id),
        ward=Caller(WARD_USER, warehouses.ward.id),
        ward2=Caller(WARD_USER_2, warehouses.ward.id),
        other=Caller(OTHER_USER, warehouses.other.id),
        nobody=Caller(99, None),
    )


# =============================================================================
# Lifecycle factories
# =============================================================================


def _payload(**kw):
    return SimpleNamespace(**kw)


@pytest.fixture
def make_draft(db, warehouses, drugs, callers):
    """make_draft(pcm=100, amox=None) -> DRAFT requisition from ward to central."""

    def _make(pcm=100, amox=None, **extra):
        items = []
        if pcm:
            items.append(_payload(drug_id=drugs.pcm.id, requested_qty=Decimal(pcm), remarks=""))
        if amox:
            items.append(_payload(drug_id=drugs.amox.id, requested_qty=Decimal(amox), remarks=""))
        payload = _payload(
            type=extra.get("type", "REGULAR"),
            priority=extra.get("priority", "NORMAL"),
            fulfilling_warehouse_id=warehouses.central.id,
            requesting_warehouse_id=None,
            required_date=None,
            purpose=extra.get("purpose", "Ward restock"),
            notes="",
            items=items,
        )
        req = create_requisition(db, payload, callers.ward)
        db.commit()
        return req

    return _make


@pytest.fixture
def make_approved(db, make_draft, callers):
    """make_approved(requested=100, approved=None) -> APPROVED single-line requisition."""

    def _make(requested=100, approved=None):
        req = make_draft(pcm=requested)
        submit_requisition(db, req.id, callers.ward)
        items = None
        if approved is not None:
            items = [_payload(requisition_item_id=req.items[0].id, approved_qty=Decimal(approved))]
        approve_requisition(db, req.id, _payload(items=items, notes=""), callers.central)
        db.commit()
        return req

    return _make


@pytest.fixture
def ship(db, callers):
    """ship(req, 30, 20, deliver=True) -> one delivery note per quantity, then dispatch."""

    def _ship(req, *quantities, deliver=False):
        line = req.items[0]
        notes = []
        for q in quantities:
            notes.append(
                create_delivery_note(
                    db,
                    req.id,
                    _payload(
                        carrier_name="",
                        notes="",
                        items=[_payload(requisition_item_id=line.id, delivered_qty=Decimal(q), lot_no="L1")],
                    ),
                    callers.central,
                )
            )
        mark_in_transit(db, req.id, callers.central, carrier_name="Hospital van")
        if deliver:
            mark_delivered(db, req.id, callers.central)
        db.commit()
        return notes

    return _ship


@pytest.fixture
def receive(db, warehouses):
    """receive(caller, line, 80, note=None, complete=True) -> session (or CompletionResult)."""

    def _receive(caller, line, qty, note=None, complete=True, condition="GOOD", ledger=None):
        sess = open_session(db, warehouses.ward.id, caller)
        add_received_item(
            db,
            sess.id,
            _payload(
                requisition_item_id=line.id,
                requisition_id=line.requisition_id,
                delivery_note_id=note.id if note is not None else None,
                drug_id=line.drug_id,
                quantity=Decimal(qty),
                lot_no="L1",
                expiry_date=None,
                manufacturer="",
                condition=condition,
                notes="",
            ),
            caller,
        )
        db.commit()
        if not complete:
            return sess
        result = complete_session(db, sess.id, caller, ledger=ledger)
        db.commit()
        return result

    return _receive


@pytest.fixture
def payload():
    return _payload
