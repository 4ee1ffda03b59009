"""Domain error taxonomy.

Every failure a caller can observe is one of these classes. Storage errors are
translated into the same taxonomy by :mod:`fulfillment.transactions`.
"""

from typing import Optional


class FulfillmentError(ValueError):
    code = "FULFILLMENT_ERROR"
    status_code = 400

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self)}


class NotFoundError(FulfillmentError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[int] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found.")


class PermissionDeniedError(FulfillmentError):
    code = "FORBIDDEN"
    status_code = 403


class InvalidInputError(FulfillmentError):
    code = "INVALID_INPUT"


class InvalidQuantityError(InvalidInputError):
    code = "INVALID_QUANTITY"


class InsufficientStockError(FulfillmentError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, violations: list[dict]):
        self.violations = violations
        first = violations[0]
        super().__init__(
            f"Insufficient stock for {first['product_name']} "
            f"(requested {first['requested_qty']}, available {first['available_qty']})."
        )

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["violations"] = self.violations
        return detail


class InvalidTransitionError(FulfillmentError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, entity: str, from_status: str, to_status: str, reason: Optional[str] = None):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        message = f"{entity} transition {from_status} -> {to_status} is not allowed."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)


class VerificationFailedError(FulfillmentError):
    """Handover code rejected. Subclasses are only distinguished in logs."""

    code = "VERIFICATION_FAILED"
    public_message = "Verification failed."

    def to_detail(self) -> dict:
        return {"code": VerificationFailedError.code, "message": self.public_message}


class CodeExpiredError(VerificationFailedError):
    pass


class InvalidCodeError(VerificationFailedError):
    pass


class NoAgentAvailableError(FulfillmentError):
    code = "NO_AGENT_AVAILABLE"
    status_code = 409


class DuplicatePendingPayoutError(FulfillmentError):
    code = "DUPLICATE_PENDING_PAYOUT"
    status_code = 409


class InsufficientBalanceError(FulfillmentError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, requested, available):
        self.requested = requested
        self.available = available
        super().__init__(f"Requested {requested} exceeds available balance {available}.")


class WithdrawalBelowMinimumError(FulfillmentError):
    code = "BELOW_MINIMUM_WITHDRAWAL"


class MissingPayoutAccountError(FulfillmentError):
    code = "MISSING_PAYOUT_ACCOUNT"


class ConcurrencyConflictError(FulfillmentError):
    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class DataIntegrityError(FulfillmentError):
    code = "DATA_INTEGRITY"
    status_code = 409


class StorageUnavailableError(FulfillmentError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
