"""
Requisition lifecycle on the requesting / fulfilling sides:
create -> submit -> approve | reject | cancel, drafts, queues.
"""
from decimal import Decimal

import pytest

from app.models.requisition import RequisitionEvent, RequisitionStatus
from app.services.inventory_common import org_code
from app.services.requisition_errors import (
    InvalidTransition,
    NotFound,
    PermissionDenied,
    QuantityViolation,
    ValidationError,
)
from app.services.requisition_service import (
    approve_requisition,
    cancel_requisition,
    create_requisition,
    get_visible_requisition,
    list_requisitions,
    reject_requisition,
    submit_requisition,
    update_requisition,
)


def _create_payload(payload, warehouses, drugs, **kw):
    base = dict(
        type="REGULAR",
        priority="NORMAL",
        fulfilling_warehouse_id=warehouses.central.id,
        requesting_warehouse_id=None,
        required_date=None,
        purpose="",
        notes="",
        items=[payload(drug_id=drugs.pcm.id, requested_qty=Decimal("10"), remarks="")],
    )
    base.update(kw)
    return payload(**base)


class TestCreate:

    def test_draft_with_catalog_snapshot(self, db, make_draft, warehouses, drugs):
        req = make_draft(pcm=100, amox=20)

        assert req.status == RequisitionStatus.DRAFT
        assert req.requisition_number.startswith(f"{org_code()}REQ")
        assert req.requesting_warehouse_id == warehouses.ward.id
        assert req.fulfilling_warehouse_id == warehouses.central.id
        assert [it.line_no for it in req.items] == [1, 2]

        pcm = req.items[0]
        assert pcm.drug_id == drugs.pcm.id
        assert pcm.unit == "TAB"
        assert pcm.unit_price == Decimal("1.20")
        assert pcm.requested_qty == Decimal("100")
        assert pcm.approved_qty == pcm.delivered_qty == pcm.received_qty == 0

        events = db.query(RequisitionEvent).filter(RequisitionEvent.requisition_id == req.id).all()
        assert [e.action for e in events] == ["CREATE"]
        assert events[0].to_status == "DRAFT"

    def test_only_for_own_warehouse(self, db, payload, warehouses, drugs, callers):
        p = _create_payload(payload, warehouses, drugs, requesting_warehouse_id=warehouses.other.id)
        with pytest.raises(PermissionDenied):
            create_requisition(db, p, callers.ward)

    def test_caller_without_warehouse(self, db, payload, warehouses, drugs, callers):
        with pytest.raises(PermissionDenied):
            create_requisition(db, _create_payload(payload, warehouses, drugs), callers.nobody)

    def test_same_warehouse_both_sides(self, db, payload, warehouses, drugs, callers):
        p = _create_payload(payload, warehouses, drugs, fulfilling_warehouse_id=warehouses.ward.id)
        with pytest.raises(ValidationError):
            create_requisition(db, p, callers.ward)

    def test_inactive_fulfilling_warehouse(self, db, payload, warehouses, drugs, callers):
        p = _create_payload(payload, warehouses, drugs, fulfilling_warehouse_id=warehouses.closed.id)
        with pytest.raises(ValidationError):
            create_requisition(db, p, callers.ward)

    def test_unknown_or_inactive_drug(self, db, payload, warehouses, drugs, callers):
        for drug_id in (drugs.retired.id, 9999):
            p = _create_payload(
                payload, warehouses, drugs,
                items=[payload(drug_id=drug_id, requested_qty=Decimal("1"), remarks="")],
            )
            with pytest.raises(ValidationError):
                create_requisition(db, p, callers.ward)
            db.rollback()

    def test_needs_items(self, db, payload, warehouses, drugs, callers):
        with pytest.raises(ValidationError):
            create_requisition(db, _create_payload(payload, warehouses, drugs, items=[]), callers.ward)

    def test_invalid_priority(self, db, payload, warehouses, drugs, callers):
        with pytest.raises(ValidationError):
            create_requisition(db, _create_payload(payload, warehouses, drugs, priority="ASAP"), callers.ward)

    def test_requested_qty_beyond_stored_precision(self, db, payload, warehouses, drugs, callers):
        items = [payload(drug_id=drugs.pcm.id, requested_qty=Decimal("2.12345"), remarks="")]
        with pytest.raises(ValidationError):
            create_requisition(db, _create_payload(payload, warehouses, drugs, items=items), callers.ward)
        db.rollback()

        items = [payload(drug_id=drugs.pcm.id, requested_qty=Decimal("2.1234"), remarks="")]
        req = create_requisition(db, _create_payload(payload, warehouses, drugs, items=items), callers.ward)
        db.commit()
        assert req.items[0].requested_qty == Decimal("2.1234")


class TestDraftAndSubmit:

    def test_update_draft(self, db, make_draft, payload, callers):
        req = make_draft()
        update_requisition(
            db, req.id,
            payload(priority="urgent", required_date=None, purpose=" Night stock ", notes=None),
            callers.ward,
        )
        db.commit()
        assert req.priority.value == "URGENT"
        assert req.purpose == "Night stock"

    def test_update_after_submit_rejected(self, db, make_draft, payload, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        with pytest.raises(InvalidTransition):
            update_requisition(
                db, req.id, payload(priority="HIGH", required_date=None, purpose=None, notes=None), callers.ward
            )

    def test_submit(self, db, make_draft, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        assert req.status == RequisitionStatus.SUBMITTED
        assert req.submitted_by_id == callers.ward.user_id
        assert req.submitted_at is not None

    def test_submit_by_fulfilling_side_denied(self, db, make_draft, callers):
        req = make_draft()
        with pytest.raises(PermissionDenied):
            submit_requisition(db, req.id, callers.central)

    def test_submit_twice(self, db, make_draft, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        with pytest.raises(InvalidTransition):
            submit_requisition(db, req.id, callers.ward)

    def test_unknown_requisition(self, db, callers, warehouses):
        with pytest.raises(NotFound):
            submit_requisition(db, 424242, callers.ward)


class TestApprove:

    def _submitted(self, db, make_draft, callers, **kw):
        req = make_draft(**kw)
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        return req

    def test_defaults_to_requested(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers, pcm=100, amox=30)
        approve_requisition(db, req.id, payload(items=None, notes="ok"), callers.central)
        db.commit()

        assert req.status == RequisitionStatus.APPROVED
        assert [it.approved_qty for it in req.items] == [Decimal("100"), Decimal("30")]
        assert req.approved_by_id == callers.central.user_id

    def test_lowered_per_line(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers, pcm=100, amox=30)
        lines = [
            payload(requisition_item_id=req.items[0].id, approved_qty=Decimal("60")),
            payload(requisition_item_id=req.items[1].id, approved_qty=Decimal("0")),
        ]
        approve_requisition(db, req.id, payload(items=lines, notes=""), callers.central)
        db.commit()
        assert [it.approved_qty for it in req.items] == [Decimal("60"), Decimal("0")]

    def test_above_requested_is_quantity_violation(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers, pcm=100)
        lines = [payload(requisition_item_id=req.items[0].id, approved_qty=Decimal("101"))]
        with pytest.raises(QuantityViolation):
            approve_requisition(db, req.id, payload(items=lines, notes=""), callers.central)
        db.rollback()
        assert req.status == RequisitionStatus.SUBMITTED
        assert req.items[0].approved_qty == 0

    def test_approved_qty_beyond_stored_precision(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers, pcm=1)
        lines = [payload(requisition_item_id=req.items[0].id, approved_qty=Decimal("0.99999"))]
        with pytest.raises(ValidationError):
            approve_requisition(db, req.id, payload(items=lines, notes=""), callers.central)
        db.rollback()
        assert req.status == RequisitionStatus.SUBMITTED
        assert req.items[0].approved_qty == 0

    def test_all_zero_is_rejected(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers, pcm=100)
        lines = [payload(requisition_item_id=req.items[0].id, approved_qty=Decimal("0"))]
        with pytest.raises(ValidationError):
            approve_requisition(db, req.id, payload(items=lines, notes=""), callers.central)

    def test_foreign_line(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers, pcm=100)
        lines = [payload(requisition_item_id=987654, approved_qty=Decimal("1"))]
        with pytest.raises(ValidationError):
            approve_requisition(db, req.id, payload(items=lines, notes=""), callers.central)

    def test_requesting_side_cannot_approve(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers)
        with pytest.raises(PermissionDenied):
            approve_requisition(db, req.id, payload(items=None, notes=""), callers.ward)

    def test_bystander_cannot_approve(self, db, make_draft, payload, callers):
        req = self._submitted(db, make_draft, callers)
        with pytest.raises(PermissionDenied):
            approve_requisition(db, req.id, payload(items=None, notes=""), callers.other)

    def test_draft_cannot_be_approved(self, db, make_draft, payload, callers):
        req = make_draft()
        with pytest.raises(InvalidTransition):
            approve_requisition(db, req.id, payload(items=None, notes=""), callers.central)


class TestRejectAndCancel:

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reject_without_reason(self, db, make_draft, callers, reason):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        events_before = len(req.events)

        with pytest.raises(ValidationError):
            reject_requisition(db, req.id, reason, callers.central)

        db.rollback()
        assert req.status == RequisitionStatus.SUBMITTED
        assert req.rejection_reason == ""
        assert len(req.events) == events_before

    def test_reject_with_reason(self, db, make_draft, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        reject_requisition(db, req.id, "  Out of stock until Monday ", callers.central)
        db.commit()

        assert req.status == RequisitionStatus.REJECTED
        assert req.rejection_reason == "Out of stock until Monday"
        assert req.closed_at is not None
        assert req.events[-1].action == "REJECT"
        assert req.events[-1].notes == "Out of stock until Monday"

    def test_requesting_side_cannot_reject(self, db, make_draft, callers):
        req = make_draft()
        submit_requisition(db, req.id, callers.ward)
        db.commit()
        with pytest.raises(PermissionDenied):
            reject_requisition(db, req.id, "no", callers.ward)

    def test_cancel_draft_and_submitted(self, db, make_draft, callers):
        draft = make_draft()
        submitted = make_draft()
        submit_requisition(db, submitted.id, callers.ward)
        cancel_requisition(db, draft.id, "typo", callers.ward)
        cancel_requisition(db, submitted.id, None, callers.ward)
        db.commit()
        assert draft.status == RequisitionStatus.CANCELLED
        assert draft.cancel_reason == "typo"
        assert submitted.status == RequisitionStatus.CANCELLED

    def test_cancel_by_fulfilling_side_denied(self, db, make_draft, callers):
        req = make_draft()
        with pytest.raises(PermissionDenied):
            cancel_requisition(db, req.id, "", callers.central)

    def test_cancel_after_approval(self, db, make_approved, callers):
        req = make_approved()
        with pytest.raises(InvalidTransition):
            cancel_requisition(db, req.id, "", callers.ward)

    def test_terminal_is_final(self, db, make_draft, callers):
        req = make_draft()
        cancel_requisition(db, req.id, "", callers.ward)
        db.commit()
        with pytest.raises(InvalidTransition):
            submit_requisition(db, req.id, callers.ward)


class TestQueues:

    def test_incoming_and_outgoing(self, db, make_draft, callers):
        a = make_draft()
        b = make_draft()
        submit_requisition(db, b.id, callers.ward)
        db.commit()

        assert {r.id for r in list_requisitions(db, callers.ward, direction="outgoing")} == {a.id, b.id}
        assert list_requisitions(db, callers.ward, direction="incoming") == []
        assert {r.id for r in list_requisitions(db, callers.central, direction="incoming")} == {a.id, b.id}
        assert [r.id for r in list_requisitions(db, callers.central, status=["SUBMITTED"])] == [b.id]
        assert list_requisitions(db, callers.other) == []

    def test_bad_direction(self, db, callers):
        with pytest.raises(ValidationError):
            list_requisitions(db, callers.ward, direction="sideways")

    def test_bystander_cannot_see(self, db, make_draft, callers):
        req = make_draft()
        assert get_visible_requisition(db, req.id, callers.central).id == req.id
        with pytest.raises(NotFound):
            get_visible_requisition(db, req.id, callers.other)

    def test_timeline(self, db, make_approved):
        req = make_approved()
        events = (
            db.query(RequisitionEvent)
            .filter(RequisitionEvent.requisition_id == req.id)
            .order_by(RequisitionEvent.id.asc())
            .all()
        )
        assert [(e.action, e.from_status, e.to_status) for e in events] == [
            ("CREATE", None, "DRAFT"),
            ("SUBMIT", "DRAFT", "SUBMITTED"),
            ("APPROVE", "SUBMITTED", "APPROVED"),
        ]
