"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Every error carries a status code, context and a recovery hint, and says whether
the caller may safely retry the operation with a fresh read.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
        retryable: Whether retrying with a fresh read can succeed
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
        }


# ============================================================================
# Validation errors (caller's fault, never retried)
# ============================================================================


class ValidationError(BillingError):
    """Bad input such as an unknown plan id or a missing field."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionStateError(ValidationError):
    """Invalid subscription state transition error."""

    def __init__(self, message: str, current_state: str, requested_action: str) -> None:
        super().__init__(
            message,
            context={"current_state": current_state, "requested_action": requested_action},
            recovery_hint=(
                f"Cannot {requested_action} a subscription in state {current_state}. "
                "Check subscription status first."
            ),
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"


class InvoiceStateError(ValidationError):
    """Operation not allowed for the invoice's current status."""

    def __init__(self, message: str, invoice_id: str, status: str) -> None:
        super().__init__(
            message,
            context={"invoice_id": invoice_id, "status": status},
            recovery_hint="Only draft or open invoices can be modified",
        )
        self.error_code = "INVALID_INVOICE_STATE"


class CouponRejectedError(ValidationError):
    """Coupon collaborator refused the code."""

    def __init__(self, message: str, code: str, reason: str | None = None) -> None:
        context: dict[str, Any] = {"code": code}
        if reason:
            context["reason"] = reason
        super().__init__(
            message,
            context=context,
            recovery_hint="Check the coupon code, its validity window and redemption limits",
        )
        self.error_code = "COUPON_REJECTED"


# ============================================================================
# Not found
# ============================================================================


class NotFoundError(BillingError):
    """Requested billing entity does not exist."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint=recovery_hint,
        )


class PlanNotFoundError(NotFoundError):
    """Subscription plan not found error."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists and is active",
        )
        self.error_code = "PLAN_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(
        self, message: str, subscription_id: str | None = None, user_id: str | None = None
    ):
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if user_id:
            context["user_id"] = user_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice not found error."""

    def __init__(self, message: str, invoice_id: str | None = None) -> None:
        context = {}
        if invoice_id:
            context["invoice_id"] = invoice_id

        super().__init__(
            message, context=context, recovery_hint="Verify the invoice ID and ensure it exists"
        )
        self.error_code = "INVOICE_NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    """Payment not found error."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        context = {}
        if payment_id:
            context["payment_id"] = payment_id

        super().__init__(
            message, context=context, recovery_hint="Verify the payment ID and ensure it exists"
        )
        self.error_code = "PAYMENT_NOT_FOUND"


# ============================================================================
# Concurrency (safe to retry with a fresh read)
# ============================================================================


class ConflictError(BillingError):
    """Optimistic concurrency check failed: the row changed since it was read."""

    retryable = True

    def __init__(
        self,
        message: str,
        entity_id: str | None = None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        context: dict[str, Any] = {}
        if entity_id:
            context["entity_id"] = entity_id
        if expected_version is not None:
            context["expected_version"] = expected_version
        if actual_version is not None:
            context["actual_version"] = actual_version

        super().__init__(
            message,
            "CONFLICT",
            status_code=409,
            context=context,
            recovery_hint="Reload the subscription and retry the operation",
        )


class InvoiceNumberCollisionError(ConflictError):
    """Generated invoice number already exists."""

    def __init__(self, message: str, invoice_number: str) -> None:
        super().__init__(message)
        self.context["invoice_number"] = invoice_number
        self.error_code = "INVOICE_NUMBER_COLLISION"
        self.recovery_hint = "Retry the operation to draw a new invoice number"


# ============================================================================
# Business rule violations
# ============================================================================


class SubscriptionError(BillingError):
    """Subscription business-rule errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
        status_code: int = 400,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=status_code,
            context=context,
            recovery_hint=recovery_hint,
        )


class DuplicateSubscriptionError(SubscriptionError):
    """User already holds a non-canceled subscription."""

    def __init__(self, message: str, user_id: str, subscription_id: str | None = None) -> None:
        context = {"user_id": user_id}
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            context=context,
            recovery_hint="Change the plan of the existing subscription or cancel it first",
            status_code=409,
        )
        self.error_code = "DUPLICATE_SUBSCRIPTION"


class BillingCycleMismatchError(SubscriptionError):
    """Plan change across billing cycles is not supported."""

    def __init__(self, message: str, current_cycle: str, requested_cycle: str) -> None:
        super().__init__(
            message,
            context={"current_cycle": current_cycle, "requested_cycle": requested_cycle},
            recovery_hint="Cancel and create a new subscription to change billing cadence",
            status_code=422,
        )
        self.error_code = "BILLING_CYCLE_MISMATCH"


# ============================================================================
# External collaborators and payments
# ============================================================================


class CollaboratorError(BillingError):
    """Tax, coupon or payment collaborator failed."""

    def __init__(self, message: str, collaborator: str, status_code: int = 502) -> None:
        super().__init__(
            message,
            "COLLABORATOR_ERROR",
            status_code=status_code,
            context={"collaborator": collaborator},
            recovery_hint="The operation was rolled back; try again later",
        )


class CollaboratorTimeoutError(CollaboratorError):
    """Collaborator did not answer before the deadline."""

    def __init__(self, collaborator: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{collaborator} did not respond within {timeout_seconds}s",
            collaborator,
            status_code=504,
        )
        self.context["timeout_seconds"] = timeout_seconds
        self.error_code = "COLLABORATOR_TIMEOUT"


class PaymentFailedError(BillingError):
    """Payment gateway declined the charge."""

    def __init__(
        self,
        message: str,
        payment_id: str,
        failure_code: str | None = None,
        next_retry_at: str | None = None,
    ):
        context: dict[str, Any] = {"payment_id": payment_id}
        if failure_code:
            context["failure_code"] = failure_code
        if next_retry_at:
            context["next_retry_at"] = next_retry_at
        super().__init__(
            message,
            "PAYMENT_FAILED",
            status_code=402,
            context=context,
            recovery_hint="Verify the payment method; a retry has been scheduled when allowed",
        )
