"""
Typed failures raised by the order and stock engines.

Callers switch on ``DomainError.kind`` (an ``ErrorKind``) instead of parsing
messages. Every kind belongs to exactly one ``ErrorCategory``; only conflicts
are retryable as-is.
"""
import enum
from typing import Any, Dict, Optional


class ErrorCategory(str, enum.Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    RULE_VIOLATION = "RULE_VIOLATION"
    CONFLICT = "CONFLICT"
    EXHAUSTED = "EXHAUSTED"


class ErrorKind(str, enum.Enum):
    # input validation, rejected before any transaction opens
    INVALID_ITEMS = "INVALID_ITEMS"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_CART = "INVALID_CART"
    INVALID_SUBTOTAL = "INVALID_SUBTOTAL"

    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    CART_NOT_FOUND = "CART_NOT_FOUND"
    NO_ACTIVE_RESERVATION = "NO_ACTIVE_RESERVATION"
    TOKEN_INVALID = "TOKEN_INVALID"

    INVALID_TRANSITION = "INVALID_TRANSITION"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    CHECKOUT_EXPIRED = "CHECKOUT_EXPIRED"
    RETRY_NOT_ALLOWED = "RETRY_NOT_ALLOWED"
    INCOMPATIBLE_PROMOTIONS = "INCOMPATIBLE_PROMOTIONS"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    CART_ALREADY_CONVERTED = "CART_ALREADY_CONVERTED"

    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


_CATEGORIES = {
    ErrorKind.INVALID_ITEMS: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_QUANTITY: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_CART: ErrorCategory.VALIDATION,
    ErrorKind.INVALID_SUBTOTAL: ErrorCategory.VALIDATION,
    ErrorKind.ORDER_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.PRODUCT_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.CART_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.NO_ACTIVE_RESERVATION: ErrorCategory.NOT_FOUND,
    ErrorKind.TOKEN_INVALID: ErrorCategory.NOT_FOUND,
    ErrorKind.INVALID_TRANSITION: ErrorCategory.RULE_VIOLATION,
    ErrorKind.PRECONDITION_FAILED: ErrorCategory.RULE_VIOLATION,
    ErrorKind.CHECKOUT_EXPIRED: ErrorCategory.RULE_VIOLATION,
    ErrorKind.RETRY_NOT_ALLOWED: ErrorCategory.RULE_VIOLATION,
    ErrorKind.INCOMPATIBLE_PROMOTIONS: ErrorCategory.RULE_VIOLATION,
    ErrorKind.TOKEN_EXPIRED: ErrorCategory.RULE_VIOLATION,
    ErrorKind.CART_ALREADY_CONVERTED: ErrorCategory.RULE_VIOLATION,
    ErrorKind.CONCURRENT_MODIFICATION: ErrorCategory.CONFLICT,
    ErrorKind.INSUFFICIENT_STOCK: ErrorCategory.EXHAUSTED,
}


class DomainError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.kind = ErrorKind(kind)
        self.message = message or self.kind.value
        self.details = details or {}
        super().__init__(f"{self.kind.value}: {self.message}")

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self.kind]

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.CONFLICT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class InventoryException(DomainError):
    pass


class TransitionException(DomainError):
    pass


class OrderServiceException(DomainError):
    pass


class PaymentException(DomainError):
    pass


class PromotionException(DomainError):
    pass


class RecoveryException(DomainError):
    pass
