"""Subscription/billing error taxonomy.

Every error carries a stable error_code plus the HTTP status routes should
answer with. Provider messages never travel in these errors; they are logged
where the provider call fails.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    error_code = "BILLING_ERROR"
    status_code = 400
    default_message = "Billing operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        detail = {"error_code": self.error_code, "message": self.message}
        detail.update(self.details)
        return detail


class InvalidPlanError(BillingError):
    error_code = "INVALID_PLAN"
    default_message = "Invalid plan"


class AlreadyOnPlanError(BillingError):
    error_code = "ALREADY_ON_PLAN"
    default_message = "Already on this plan"


class NoActiveSubscriptionError(BillingError):
    error_code = "NO_ACTIVE_SUBSCRIPTION"
    default_message = "No active subscription"


class NoSubscriptionError(BillingError):
    error_code = "NO_SUBSCRIPTION"
    default_message = "No subscription to reactivate"


class NoCustomerError(BillingError):
    error_code = "NO_CUSTOMER"
    default_message = "No billing customer for this organization"


class ProviderUnavailableError(BillingError):
    error_code = "PROVIDER_UNAVAILABLE"
    status_code = 502
    default_message = "Payment provider request failed"


class SignatureInvalidError(BillingError):
    error_code = "SIGNATURE_INVALID"
    default_message = "Invalid webhook signature"


class OrganizationNotFoundError(BillingError):
    error_code = "NOT_FOUND"
    status_code = 404
    default_message = "Organization not found"


class SnapshotConflictError(BillingError):
    error_code = "SNAPSHOT_CONFLICT"
    status_code = 409
    default_message = "Subscription was modified concurrently, please retry"


class CheckoutSessionNotFoundError(BillingError):
    error_code = "NOT_FOUND"
    status_code = 404
    default_message = "Checkout session not found"


class SubscriptionExistsError(BillingError):
    error_code = "SUBSCRIPTION_EXISTS"
    default_message = "Organization already has a subscription; change plan instead"
