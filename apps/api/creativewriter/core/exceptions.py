"""
Application exceptions for CreativeWriter.

Every policy rejection carries a stable machine-readable ``code`` that clients
branch on, an HTTP status, and an optional ``details`` payload that is returned
to the client as ``data``.
"""

from http import HTTPStatus
from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Error message
        status_code: HTTP status code
        code: Application error code
        details: Additional error details
    """

    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = int(status_code)
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the API error body."""
        body: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["data"] = self.details
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class BillingError(AppException):
    """Policy rejection raised by the billing and metering layer."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = HTTPStatus.BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, status_code=status_code, code=code, details=details)


class PaymentGatewayError(AppException):
    """Raised when the payment gateway is unreachable or rejects a request."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.BAD_GATEWAY,
            code="PAYMENT_GATEWAY_ERROR",
            details=details,
        )


# ────────────────────────────────────────────────
# Factories for the fixed rejection set
# ────────────────────────────────────────────────
def no_user() -> BillingError:
    return BillingError("NO_USER", "Authentication required", HTTPStatus.UNAUTHORIZED)


def no_subscription() -> BillingError:
    return BillingError("NO_SUBSCRIPTION", "No active subscription found", HTTPStatus.FORBIDDEN)


def subscription_inactive(status: str) -> BillingError:
    return BillingError(
        "SUBSCRIPTION_INACTIVE",
        f"Subscription is {status}. Please renew to continue.",
        HTTPStatus.FORBIDDEN,
        details={"status": status},
    )


def plan_not_found() -> BillingError:
    return BillingError("PLAN_NOT_FOUND", "Plan not found", HTTPStatus.NOT_FOUND)


def missing_input(message: str = "Required fields are missing") -> BillingError:
    return BillingError("MISSING_INPUT", message, HTTPStatus.BAD_REQUEST)
