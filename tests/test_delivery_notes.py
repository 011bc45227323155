from decimal import Decimal

import pytest

from app.core.config import settings
from app.models.requisition import DeliveryNoteStatus, RequisitionStatus
from app.models.stock import StockMovement
from app.services.delivery_note_service import (
    create_delivery_note,
    list_delivery_notes,
    mark_delivered,
    mark_in_transit,
)
from app.services.inventory_common import org_code
from app.services.requisition_errors import (
    InvalidTransition,
    LedgerUnavailable,
    PermissionDenied,
    QuantityViolation,
    ValidationError,
)
from app.services.requisition_service import submit_requisition


def _note(payload, line_id, *quantities):
    return payload(
        carrier_name="",
        notes="",
        items=[payload(requisition_item_id=line_id, delivered_qty=Decimal(q)) for q in quantities],
    )


class TestCreateDeliveryNote:

    def test_first_note_moves_to_preparing(self, db, make_approved, payload, callers):
        req = make_approved(requested=100)
        line = req.items[0]

        note = create_delivery_note(db, req.id, _note(payload, line.id, 60), callers.central)
        db.commit()

        assert req.status == RequisitionStatus.PREPARING
        assert note.status == DeliveryNoteStatus.PREPARED
        assert note.note_number.startswith(f"{org_code()}DN")
        assert note.prepared_by_id == callers.central.user_id
        assert line.delivered_qty == Decimal("60")
        assert note.items[0].drug_id == line.drug_id
        assert req.events[-1].action == "CREATE_DELIVERY_NOTE"

    def test_second_note_while_preparing(self, db, make_approved, payload, callers):
        req = make_approved(requested=100)
        line = req.items[0]
        create_delivery_note(db, req.id, _note(payload, line.id, 60), callers.central)
        create_delivery_note(db, req.id, _note(payload, line.id, 40), callers.central)
        db.commit()

        assert req.status == RequisitionStatus.PREPARING
        assert line.delivered_qty == Decimal("100")
        assert len(list_delivery_notes(db, req)) == 2

    def test_cannot_exceed_approved(self, db, make_approved, payload, callers):
        req = make_approved(requested=100, approved=50)
        line = req.items[0]
        create_delivery_note(db, req.id, _note(payload, line.id, 30), callers.central)
        db.commit()

        with pytest.raises(QuantityViolation):
            create_delivery_note(db, req.id, _note(payload, line.id, 21), callers.central)
        db.rollback()
        assert line.delivered_qty == Decimal("30")

    def test_lines_for_same_item_are_summed(self, db, make_approved, payload, callers):
        req = make_approved(requested=50)
        line = req.items[0]
        with pytest.raises(QuantityViolation):
            create_delivery_note(db, req.id, _note(payload, line.id, 30, 25), callers.central)
        db.rollback()
        assert req.status == RequisitionStatus.APPROVED
        assert line.delivered_qty == 0

    def test_non_positive_quantity(self, db, make_approved, payload, callers):
        req = make_approved()
        with pytest.raises(ValidationError):
            create_delivery_note(db, req.id, _note(payload, req.items[0].id, 0), callers.central)

    def test_more_than_four_decimal_places(self, db, make_approved, payload, callers):
        req = make_approved(requested=1)
        line = req.items[0]
        with pytest.raises(ValidationError):
            create_delivery_note(db, req.id, _note(payload, line.id, "0.00004"), callers.central)
        db.rollback()
        assert req.status == RequisitionStatus.APPROVED
        assert line.delivered_qty == 0

        create_delivery_note(db, req.id, _note(payload, line.id, "0.2500"), callers.central)
        db.commit()
        assert line.delivered_qty == Decimal("0.25")

    def test_empty_note(self, db, make_approved, payload, callers):
        req = make_approved()
        with pytest.raises(ValidationError):
            create_delivery_note(db, req.id, payload(carrier_name="", notes="", items=[]), callers.central)

    def test_foreign_line(self, db, make_approved, payload, callers):
        req = make_approved()
        other = make_approved()
        with pytest.raises(ValidationError):
            create_delivery_note(db, req.id, _note(payload, other.items[0].id, 1), callers.central)

    def test_requesting_side_denied(self, db, make_approved, payload, callers):
        req = make_approved()
        with pytest.raises(PermissionDenied):
            create_delivery_note(db, req.id, _note(payload, req.items[0].id, 1), callers.ward)

    def test_requesting_side_denied_even_before_approval(self, db, make_draft, payload, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        with pytest.raises(PermissionDenied):
            create_delivery_note(db, req.id, _note(payload, req.items[0].id, 1), callers.ward)

    def test_not_before_approval(self, db, make_draft, payload, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        with pytest.raises(InvalidTransition):
            create_delivery_note(db, req.id, _note(payload, req.items[0].id, 1), callers.central)


class TestDispatch:

    def test_in_transit_then_delivered(self, db, make_approved, payload, callers):
        req = make_approved(requested=100)
        n1 = create_delivery_note(db, req.id, _note(payload, req.items[0].id, 60), callers.central)
        n2 = create_delivery_note(db, req.id, _note(payload, req.items[0].id, 40), callers.central)

        mark_in_transit(db, req.id, callers.central, carrier_name="Van 2")
        db.commit()
        assert req.status == RequisitionStatus.IN_TRANSIT
        assert {n1.status, n2.status} == {DeliveryNoteStatus.IN_TRANSIT}
        assert n1.carrier_name == "Van 2"
        assert n1.dispatched_by_id == callers.central.user_id

        mark_delivered(db, req.id, callers.central)
        db.commit()
        assert req.status == RequisitionStatus.DELIVERED
        assert {n1.status, n2.status} == {DeliveryNoteStatus.DELIVERED}

    def test_no_new_note_once_dispatched(self, db, make_approved, ship, payload, callers):
        req = make_approved(requested=100, approved=100)
        ship(req, 60)
        with pytest.raises(InvalidTransition):
            create_delivery_note(db, req.id, _note(payload, req.items[0].id, 40), callers.central)

    def test_in_transit_needs_preparing(self, db, make_approved, callers):
        req = make_approved()
        with pytest.raises(InvalidTransition):
            mark_in_transit(db, req.id, callers.central)

    def test_requesting_side_cannot_dispatch(self, db, make_approved, payload, callers):
        req = make_approved()
        create_delivery_note(db, req.id, _note(payload, req.items[0].id, 10), callers.central)
        db.commit()
        with pytest.raises(PermissionDenied):
            mark_in_transit(db, req.id, callers.ward)


class TestStockIssue:

    def _issues(self, db):
        return (
            db.query(StockMovement)
            .filter(StockMovement.txn_type == "ISSUE")
            .order_by(StockMovement.id.asc())
            .all()
        )

    def test_each_note_line_issues_from_fulfilling_store(self, db, make_approved, payload, callers):
        req = make_approved(requested=100)
        line = req.items[0]
        note = create_delivery_note(db, req.id, _note(payload, line.id, 60, 15), callers.central)
        db.commit()

        issues = self._issues(db)
        assert [m.quantity_change for m in issues] == [Decimal("-60"), Decimal("-15")]
        assert {m.warehouse_id for m in issues} == {req.fulfilling_warehouse_id}
        assert {m.drug_id for m in issues} == {line.drug_id}
        assert [m.idempotency_key for m in issues] == [f"DN:{note.id}:{nl.id}" for nl in note.items]
        assert {m.ref_id for m in issues} == {req.id}

    def test_rejected_note_issues_nothing(self, db, make_approved, payload, callers):
        req = make_approved(requested=10)
        with pytest.raises(QuantityViolation):
            create_delivery_note(db, req.id, _note(payload, req.items[0].id, 11), callers.central)
        db.rollback()
        assert self._issues(db) == []

    def test_ledger_down_aborts_the_note(self, db, make_approved, payload, callers, monkeypatch):
        class DownLedger:
            def post_issue(self, **kw):
                raise ConnectionError("ledger host unreachable")

        monkeypatch.setattr(settings, "LEDGER_RETRY_BACKOFF_SECONDS", 0.0)
        req = make_approved(requested=10)
        with pytest.raises(LedgerUnavailable):
            create_delivery_note(
                db, req.id, _note(payload, req.items[0].id, 10), callers.central, ledger=DownLedger()
            )
        db.rollback()
        assert req.status == RequisitionStatus.APPROVED
        assert req.items[0].delivered_qty == 0
        assert list_delivery_notes(db, req) == []
