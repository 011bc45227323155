# FILE: app/services/requisition_errors.py
from __future__ import annotations


class RequisitionError(RuntimeError):
    """Base for every expected failure of the requisition core."""
    status_code = 400


class NotFound(RequisitionError):
    status_code = 404


class PermissionDenied(RequisitionError):
    """Caller's warehouse is the wrong side (or neither side) for the action."""
    status_code = 403


class InvalidTransition(RequisitionError):
    """Current status does not permit the action. Safe to retry after re-fetch."""
    status_code = 409


class QuantityViolation(RequisitionError):
    """A quantity would breach received <= delivered <= approved <= requested."""
    status_code = 422


class ValidationError(RequisitionError):
    """Malformed input: non-positive quantity, missing reason, unknown drug ..."""
    status_code = 400


class LedgerUnavailable(RequisitionError):
    """Stock ledger could not be reached; the caller retries the whole completion."""
    status_code = 503
