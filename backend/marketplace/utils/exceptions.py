"""
Domain exceptions for the offer/transaction services.

WHAT: Error taxonomy shared by the store, the engines and the HTTP layer
WHY: Every rejected operation must say which precondition failed
HOW: Exception classes carrying a stable code, a readable message and details
"""

from typing import Optional, List, Dict, Any


class MarketplaceException(Exception):
    """Base class for recoverable, caller-facing errors."""

    retryable: bool = False

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(MarketplaceException):
    """Raised when an offer, transaction, listing or evidence ref does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id}
        )


class NotAuthorizedError(MarketplaceException):
    """Raised when the acting user is the wrong party or role for an action."""

    def __init__(self, message: str, actor_id: Optional[int] = None):
        super().__init__(
            message=message,
            code="NOT_AUTHORIZED",
            details={"actor_id": actor_id} if actor_id is not None else None
        )


class InvalidStateError(MarketplaceException):
    """Raised when an action is not valid from the entity's current status."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(
            message=message,
            code="INVALID_STATE",
            details={"current_status": current_status} if current_status is not None else None
        )


class InvalidAmountError(MarketplaceException):
    """Raised for non-positive or malformed monetary amounts."""

    def __init__(self, amount: Any):
        super().__init__(
            message=f"Invalid amount: {amount} (must be a positive decimal)",
            code="INVALID_AMOUNT",
            details={"amount": str(amount)}
        )


class SelfDealingError(MarketplaceException):
    """Raised when a user tries to buy from or make an offer to themselves."""

    def __init__(self, user_id: int, item_id: int):
        super().__init__(
            message=f"User {user_id} cannot buy or make an offer on their own item {item_id}",
            code="SELF_DEALING",
            details={"user_id": user_id, "item_id": item_id}
        )


class VersionConflictError(MarketplaceException):
    """
    Raised when a concurrent write won the race for an entity.

    Callers re-read the entity and re-evaluate their preconditions before
    deciding whether to retry.
    """

    retryable = True

    def __init__(self, entity: str, entity_id: Any,
                 expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None):
        super().__init__(
            message=f"{entity} {entity_id} was modified concurrently "
                    f"(expected version {expected_version}, found {actual_version})",
            code="VERSION_CONFLICT",
            details={
                "entity": entity,
                "id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }
        )


class ValidationError(MarketplaceException):
    """Raised for missing or malformed fields (e.g. empty cancellation reason)."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )


class UnavailableError(MarketplaceException):
    """Raised when the entity store cannot be reached; nothing was written."""

    retryable = True

    def __init__(self, message: str = "Entity store unavailable, retry later"):
        super().__init__(message=message, code="UNAVAILABLE")
