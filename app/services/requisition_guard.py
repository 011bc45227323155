# FILE: app/services/requisition_guard.py
"""
Transition guard for requisitions.

The whole permission surface is the comparison of the caller's warehouse
with the requisition's two warehouses:

  * fulfilling side  - approves / rejects / prepares / ships / closes out
  * requesting side  - edits drafts / submits / cancels / receives

``allowed_actions`` is total over (status, side); every mutating service
call goes through ``check_transition`` before touching any row.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from app.models.requisition import Requisition, RequisitionStatus
from app.services.requisition_errors import InvalidTransition, PermissionDenied

S = RequisitionStatus


class Side(str, enum.Enum):
    FULFILLING = "FULFILLING"
    REQUESTING = "REQUESTING"
    NONE = "NONE"


class Action(str, enum.Enum):
    UPDATE_DRAFT = "UPDATE_DRAFT"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    CREATE_DELIVERY_NOTE = "CREATE_DELIVERY_NOTE"
    MARK_IN_TRANSIT = "MARK_IN_TRANSIT"
    MARK_DELIVERED = "MARK_DELIVERED"
    RECEIVE = "RECEIVE"
    CLOSE_OUT = "CLOSE_OUT"


@dataclass(frozen=True)
class Caller:
    user_id: Optional[int]
    warehouse_id: Optional[int]


# action -> (legal-from statuses, required side)
RULES: Dict[Action, Tuple[FrozenSet[RequisitionStatus], Side]] = {
    Action.UPDATE_DRAFT: (frozenset({S.DRAFT}), Side.REQUESTING),
    Action.SUBMIT: (frozenset({S.DRAFT}), Side.REQUESTING),
    Action.APPROVE: (frozenset({S.SUBMITTED}), Side.FULFILLING),
    Action.REJECT: (frozenset({S.SUBMITTED}), Side.FULFILLING),
    Action.CANCEL: (frozenset({S.DRAFT, S.SUBMITTED}), Side.REQUESTING),
    Action.CREATE_DELIVERY_NOTE: (frozenset({S.APPROVED, S.PREPARING}), Side.FULFILLING),
    Action.MARK_IN_TRANSIT: (frozenset({S.PREPARING}), Side.FULFILLING),
    Action.MARK_DELIVERED: (frozenset({S.IN_TRANSIT}), Side.FULFILLING),
    Action.RECEIVE: (frozenset({S.IN_TRANSIT, S.DELIVERED}), Side.REQUESTING),
    Action.CLOSE_OUT: (frozenset({S.IN_TRANSIT, S.DELIVERED}), Side.FULFILLING),
}

# status edges; used to assert that nothing ever moves backwards
TRANSITIONS: Dict[RequisitionStatus, FrozenSet[RequisitionStatus]] = {
    S.DRAFT: frozenset({S.SUBMITTED, S.CANCELLED}),
    S.SUBMITTED: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.PREPARING}),
    S.PREPARING: frozenset({S.IN_TRANSIT}),
    S.IN_TRANSIT: frozenset({S.DELIVERED, S.RECEIVED, S.PARTIALLY_RECEIVED}),
    S.DELIVERED: frozenset({S.RECEIVED, S.PARTIALLY_RECEIVED}),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
    S.RECEIVED: frozenset(),
    S.PARTIALLY_RECEIVED: frozenset(),
}


def side_of(req: Requisition, warehouse_id: Optional[int]) -> Side:
    if warehouse_id is None:
        return Side.NONE
    wid = int(warehouse_id)
    if wid == int(req.fulfilling_warehouse_id):
        return Side.FULFILLING
    if wid == int(req.requesting_warehouse_id):
        return Side.REQUESTING
    return Side.NONE


def allowed_actions(status: RequisitionStatus, side: Side) -> FrozenSet[Action]:
    st = RequisitionStatus(status)
    return frozenset(
        a for a, (states, need) in RULES.items()
        if st in states and side == need
    )


def can_move(current: RequisitionStatus, target: RequisitionStatus) -> bool:
    return RequisitionStatus(target) in TRANSITIONS[RequisitionStatus(current)]


def check_transition(req: Requisition, action: Action, caller: Caller) -> Side:
    """
    Raise PermissionDenied (wrong side) or InvalidTransition (wrong status).
    Side is checked first, so a wrong-side caller is denied in every status.
    """
    states, need = RULES[action]
    side = side_of(req, caller.warehouse_id)

    if side != need:
        raise PermissionDenied(
            f"{action.value} requires the {need.value.lower()} warehouse of requisition "
            f"{req.requisition_number}."
        )

    if RequisitionStatus(req.status) not in states:
        legal = ", ".join(sorted(s.value for s in states))
        raise InvalidTransition(
            f"Cannot {action.value} requisition {req.requisition_number} in status "
            f"{RequisitionStatus(req.status).value} (allowed from {legal})."
        )
    return side


def move(req: Requisition, target: RequisitionStatus) -> RequisitionStatus:
    """Set status after asserting the edge exists. Returns the previous status."""
    prev = RequisitionStatus(req.status)
    if not can_move(prev, target):
        raise InvalidTransition(
            f"Requisition {req.requisition_number} cannot move {prev.value} -> "
            f"{RequisitionStatus(target).value}."
        )
    req.status = RequisitionStatus(target)
    return prev
