# bidding_service/errors.py
"""
Typed failures raised by the bidding core.

Every public operation either commits or raises one of these. The HTTP layer
turns them into ``{"error": {...}}`` bodies, so none of them escapes the
service as an unhandled exception.
"""
from typing import Any, Dict, Optional


class BiddingError(Exception):
    """Base class for all bidding core failures"""

    status_code = 400
    retryable = False

    def __init__(self, message: str, code: str = "BIDDING_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class NotFound(BiddingError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            code=f"{resource_type.upper()}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class NotEnrolled(BiddingError):
    status_code = 403

    def __init__(self, student_id: int, class_id: int):
        super().__init__(
            "Student is not enrolled in this class",
            code="NOT_ENROLLED",
            details={"student_id": student_id, "class_id": class_id},
        )


class InsufficientTokens(BiddingError):
    status_code = 409

    def __init__(self, student_id: int, class_id: int):
        super().__init__(
            "No tokens remaining",
            code="INSUFFICIENT_TOKENS",
            details={"student_id": student_id, "class_id": class_id},
        )


class DuplicateBid(BiddingError):
    status_code = 409

    def __init__(self, student_id: int, opportunity_id: int):
        super().__init__(
            "A bid for this opportunity has already been placed",
            code="DUPLICATE_BID",
            details={"student_id": student_id, "opportunity_id": opportunity_id},
        )


class OpportunityClosed(BiddingError):
    status_code = 409

    def __init__(self, opportunity_id: int, status: str):
        super().__init__(
            f"Bidding is not open for this opportunity (status: {status})",
            code="OPPORTUNITY_CLOSED",
            details={"opportunity_id": opportunity_id, "status": status},
        )


class CapacityExceeded(BiddingError):
    status_code = 409

    def __init__(self, opportunity_id: int, capacity: int):
        super().__init__(
            "Opportunity has reached its capacity",
            code="CAPACITY_EXCEEDED",
            details={"opportunity_id": opportunity_id, "capacity": capacity},
        )


class CannotWithdrawWinner(BiddingError):
    status_code = 409

    def __init__(self, student_id: int, opportunity_id: int):
        super().__init__(
            "Cannot withdraw a winning bid",
            code="CANNOT_WITHDRAW_WINNER",
            details={"student_id": student_id, "opportunity_id": opportunity_id},
        )


class HasExistingBid(BiddingError):
    status_code = 409

    def __init__(self, student_id: int, class_id: int, bid_count: int):
        super().__init__(
            "Student cannot be removed since they have already placed a bid",
            code="HAS_EXISTING_BID",
            details={"student_id": student_id, "class_id": class_id, "bid_count": bid_count},
        )


class ValidationFailed(BiddingError):
    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class ConcurrencyConflict(BiddingError):
    """Serialization failure or lock contention; the whole request may be retried"""

    status_code = 409
    retryable = True

    def __init__(self, message: str = "Concurrent update conflict, please retry"):
        super().__init__(message, code="CONCURRENCY_CONFLICT")


class IntegrityViolation(BiddingError):
    status_code = 500

    def __init__(self, message: str, code: str = "INTEGRITY_VIOLATION", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class AlreadyEnrolled(IntegrityViolation):
    status_code = 409

    def __init__(self, student_id: int, class_id: int):
        super().__init__(
            "Student is already enrolled in this class",
            code="ALREADY_ENROLLED",
            details={"student_id": student_id, "class_id": class_id},
        )
