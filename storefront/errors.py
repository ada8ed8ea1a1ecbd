"""
Error taxonomy. Services raise these; the handler in main.py turns them into
JSON responses of the form {"success": false, "error": <message>, ...extra}.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    status_code: int = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, **self.extra}


class ValidationFailed(StorefrontError):
    """Malformed input. No side effects happened."""
    status_code = 400


class BusinessRuleViolation(StorefrontError):
    """Expected refusal (window elapsed, duplicate return, bad discount …)."""
    status_code = 400


class InsufficientStock(BusinessRuleViolation):
    def __init__(
        self,
        product_id: str,
        product_name: str,
        size: Optional[str],
        available: int,
        requested: int,
    ) -> None:
        label = f"{product_name} (size {size})" if size else product_name
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}",
            productId=product_id,
            size=size,
            available=available,
            requested=requested,
        )


class NotAuthenticated(StorefrontError):
    status_code = 401


class NotFound(StorefrontError):
    status_code = 404


class RefundConflict(StorefrontError):
    """Lost the refund lock: another request is refunding or already refunded."""
    status_code = 409


class GatewayError(StorefrontError):
    """Payment gateway failure on a payment-critical path."""
    status_code = 500
