"""Tax-Lot Error Hierarchy.

Typed exceptions carrying a stable error code so the application layer
can turn a rejected operation into a user-facing message.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Standardized error codes for ledger operations."""

    # Validation
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_DATE = "INVALID_DATE"
    INVALID_EVENT_TYPE = "INVALID_EVENT_TYPE"
    INVALID_PREFERENCE = "INVALID_PREFERENCE"

    # Lookup
    LOT_NOT_FOUND = "LOT_NOT_FOUND"

    # State
    LOT_ALREADY_CLOSED = "LOT_ALREADY_CLOSED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # Storage
    MALFORMED_METADATA = "MALFORMED_METADATA"


class TaxLotError(Exception):
    """Base exception for all ledger errors.

    All errors are local to the rejected operation; none leave the
    ledger in a partially written state.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class LotNotFound(TaxLotError):
    """Raised when a lot id is unknown or belongs to another user."""

    def __init__(self, lot_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Tax lot not found: {lot_id}",
            ErrorCode.LOT_NOT_FOUND,
            [{"resource_type": "tax_lot", "resource_id": lot_id}],
        )
        self.lot_id = lot_id


class InvalidQuantity(TaxLotError):
    """Raised for a non-positive quantity."""

    def __init__(self, quantity: float, message: Optional[str] = None):
        super().__init__(
            message or f"Quantity must be positive, got {quantity}",
            ErrorCode.INVALID_QUANTITY,
            [{"field": "quantity", "value": quantity}],
        )
        self.quantity = quantity


class InsufficientQuantity(TaxLotError):
    """Raised when a disposal exceeds the lot's open quantity."""

    def __init__(self, lot_id: str, requested: float, available: float):
        super().__init__(
            f"Cannot dispose {requested} of lot {lot_id}: only {available} open",
            ErrorCode.INSUFFICIENT_QUANTITY,
            [{
                "resource_id": lot_id,
                "requested": requested,
                "available": available,
            }],
        )
        self.lot_id = lot_id
        self.requested = requested
        self.available = available


class InvalidPrice(TaxLotError):
    """Raised for a negative price or cost basis."""

    def __init__(self, message: str, field: str = "price"):
        super().__init__(
            message,
            ErrorCode.INVALID_PRICE,
            [{"field": field, "issue": message}],
        )


class InvalidDate(TaxLotError):
    """Raised when a disposition precedes the acquisition."""

    def __init__(self, message: str, field: str = "disposition_date"):
        super().__init__(
            message,
            ErrorCode.INVALID_DATE,
            [{"field": field, "issue": message}],
        )


class InvalidEventType(TaxLotError):
    """Raised for an unknown tax event type."""

    def __init__(self, event_type: Any):
        super().__init__(
            f"Unknown tax event type: {event_type!r}",
            ErrorCode.INVALID_EVENT_TYPE,
            [{"field": "event_type", "value": str(event_type)}],
        )


class InvalidPreference(TaxLotError):
    """Raised when a tax preference value is out of range."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = [{"field": field, "issue": message}] if field else []
        super().__init__(message, ErrorCode.INVALID_PREFERENCE, details)


class LotAlreadyClosed(TaxLotError):
    """Raised when disposing a record that is already closed."""

    def __init__(self, lot_id: str):
        super().__init__(
            f"Tax lot already closed: {lot_id}",
            ErrorCode.LOT_ALREADY_CLOSED,
            [{"resource_type": "tax_lot", "resource_id": lot_id}],
        )
        self.lot_id = lot_id


class ConcurrentModification(TaxLotError):
    """Raised when a versioned update loses a race."""

    def __init__(self, lot_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Tax lot {lot_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            ErrorCode.CONCURRENT_MODIFICATION,
            [{
                "resource_id": lot_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }],
        )
        self.lot_id = lot_id


class MalformedMetadata(TaxLotError):
    """Raised when stored metadata cannot be parsed or validated."""

    def __init__(self, message: str, raw: Optional[str] = None):
        details = []
        if raw is not None:
            details = [{"raw": raw[:200]}]
        super().__init__(message, ErrorCode.MALFORMED_METADATA, details)
