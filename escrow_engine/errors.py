"""Domain errors raised by the escrow services.

Services raise these instead of HTTP exceptions so they can be driven from any
transport. ``main.py`` renders them as ``{"detail": ..., "error": ...}`` using
each class's ``status_code``.
"""

import enum
import uuid


class ErrorCode(enum.Enum):
    VALIDATION = "validation_error"
    INVALID_TRANSITION = "invalid_transition"
    AUTHORIZATION = "authorization_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SETTLEMENT_AMOUNT_MISMATCH = "settlement_amount_mismatch"
    TRANSACTION_ALREADY_CLOSED = "transaction_already_closed"
    DISPUTE_ALREADY_RESOLVED = "dispute_already_resolved"
    RELEASE_BLOCKED = "release_blocked"
    DUPLICATE_DELIVERY_IGNORED = "duplicate_delivery_ignored"
    RECONCILIATION_INCONSISTENCY = "reconciliation_inconsistency"
    PAYMENT_GATEWAY = "payment_gateway_error"
    LEDGER_IMBALANCE = "ledger_imbalance"


class EscrowError(Exception):
    status_code: int = 400
    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"detail": self.detail, "error": self.code.value}


class ValidationError(EscrowError):
    status_code = 422
    code = ErrorCode.VALIDATION


class InvalidTransition(EscrowError):
    status_code = 409
    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, current: enum.Enum, requested: enum.Enum) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from {current.value} to {requested.value}")

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "current": self.current.value,
            "requested": self.requested.value,
        }


class AuthorizationError(EscrowError):
    status_code = 403
    code = ErrorCode.AUTHORIZATION


class NotFound(EscrowError):
    status_code = 404
    code = ErrorCode.NOT_FOUND

    def __init__(self, entity: str, entity_id: uuid.UUID | str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(EscrowError):
    status_code = 409
    code = ErrorCode.CONFLICT


class DisputeAlreadyResolved(ConflictError):
    code = ErrorCode.DISPUTE_ALREADY_RESOLVED


class SettlementAmountMismatch(EscrowError):
    status_code = 422
    code = ErrorCode.SETTLEMENT_AMOUNT_MISMATCH

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Settlement amounts must sum to the agreed price {expected}, got {actual}"
        )

    def to_dict(self) -> dict:
        return {**super().to_dict(), "expected": self.expected, "actual": self.actual}


class TransactionAlreadyClosed(EscrowError):
    status_code = 409
    code = ErrorCode.TRANSACTION_ALREADY_CLOSED

    def __init__(self, transaction_id: uuid.UUID) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} is already closed")


class ReleaseBlocked(EscrowError):
    """A release-gate check failed. ``reasons`` lists every unmet condition."""

    status_code = 409
    code = ErrorCode.RELEASE_BLOCKED

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = reasons
        super().__init__("Release blocked: " + "; ".join(reasons))

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reasons": self.reasons}


class DuplicateDeliveryIgnored(EscrowError):
    """Not a failure: a replayed provider notification for a terminal payment."""

    status_code = 200
    code = ErrorCode.DUPLICATE_DELIVERY_IGNORED

    def __init__(self, provider_reference: str, status: enum.Enum) -> None:
        self.provider_reference = provider_reference
        self.status = status
        super().__init__(
            f"Payment {provider_reference} already {status.value}; delivery ignored"
        )


class ReconciliationInconsistency(EscrowError):
    """Payment succeeded but its transaction could not advance. Needs an operator."""

    status_code = 200
    code = ErrorCode.RECONCILIATION_INCONSISTENCY

    def __init__(self, provider_reference: str, transaction_id: uuid.UUID, cause: str) -> None:
        self.provider_reference = provider_reference
        self.transaction_id = transaction_id
        self.cause = cause
        super().__init__(
            f"Payment {provider_reference} succeeded but transaction {transaction_id} "
            f"could not be funded: {cause}"
        )


class PaymentGatewayError(EscrowError):
    status_code = 502
    code = ErrorCode.PAYMENT_GATEWAY


class LedgerImbalance(EscrowError):
    status_code = 500
    code = ErrorCode.LEDGER_IMBALANCE

    def __init__(self, transaction_id: uuid.UUID, expected: int, actual: int) -> None:
        self.transaction_id = transaction_id
        super().__init__(
            f"Milestone amounts for transaction {transaction_id} sum to {actual}, "
            f"expected {expected}"
        )
