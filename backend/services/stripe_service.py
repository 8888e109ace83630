"""Stripe Service - Billing gateway for organization subscriptions.

This service handles:
- Creating (or reusing) the Stripe customer for an organization
- Checkout sessions for first-time paid subscriptions
- Creating/updating subscriptions in place with proration
- Cancel-at-period-end, immediate cancellation and the billing portal
- Syncing the local subscription snapshot after every mutating call

Key Principles:
- plan_registry is the single source of truth for price ids
- Every mutating call ends in sync_snapshot(), the one place drift is corrected
- Metadata includes organization_id for webhook tracing
- Stripe error text is logged, never returned to clients
"""
import stripe
import os
import logging
from typing import Any, Dict, Optional

from database import database
from models import SubscriptionSnapshot
from services.plan_registry import PlanCatalog, PlanDefinition, get_plan_catalog
from services.subscription_sync import (
    apply_customer,
    apply_remote_subscription,
    persist_snapshot,
    remote_item_id,
    snapshot_from_document,
)
from services.billing_errors import (
    InvalidPlanError,
    NoActiveSubscriptionError,
    NoCustomerError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at call time with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
if os.getenv("STRIPE_API_VERSION"):
    stripe.api_version = os.getenv("STRIPE_API_VERSION")


def to_plain(obj: Any) -> Any:
    """Convert Stripe SDK objects to plain dicts and lists.

    Recent stripe releases no longer subclass dict, so provider objects are
    converted once where they enter the service and read as dicts after that.
    """
    if isinstance(obj, stripe.StripeObject):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {key: to_plain(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [to_plain(value) for value in obj]
    return obj


def _refresh(organization: Dict[str, Any], snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
    """Keep the caller's organization dict in step with what was persisted."""
    organization["subscription"] = snapshot.model_dump()
    return snapshot


class StripeService:
    """Stripe billing operations for one plan catalog."""

    def __init__(self, catalog: PlanCatalog, db=None):
        self.catalog = catalog
        self._db = db

    @property
    def db(self):
        return self._db if self._db is not None else database.get_db()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require_api_key(self):
        if not (stripe.api_key or "").strip():
            logger.error("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set")
            raise ProviderUnavailableError("Billing is not configured")

    def _require_purchasable_plan(self, plan_id: str) -> PlanDefinition:
        """Resolve a plan that can be bought; free and unknown plans cannot."""
        if not self.catalog.is_known_plan(plan_id):
            raise InvalidPlanError(f"Unknown plan: {plan_id}")
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_purchasable:
            raise InvalidPlanError(f"Plan {plan.id.value} cannot be purchased")
        return plan

    def _call(self, operation: str, organization_id: Optional[str], fn, *args, **kwargs):
        """Invoke a Stripe API call, converting provider errors. Returns plain dicts."""
        self._require_api_key()
        try:
            return to_plain(fn(*args, **kwargs))
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed for org {organization_id}: {e}")
            raise ProviderUnavailableError(f"Failed to {operation}") from e

    # -------------------------------------------------------------------------
    # Customer
    # -------------------------------------------------------------------------

    async def ensure_customer(self, organization: Dict[str, Any]) -> str:
        """Return the organization's Stripe customer id, creating and persisting one if needed."""
        snapshot = snapshot_from_document(organization)
        if snapshot.stripe_customer_id:
            return snapshot.stripe_customer_id

        org_id = organization["organization_id"]
        params = {
            "name": organization.get("name"),
            "metadata": {"organization_id": org_id},
            "idempotency_key": f"customer-{org_id}",
        }
        if organization.get("billing_email"):
            params["email"] = organization["billing_email"]

        customer = self._call("create billing customer", org_id, stripe.Customer.create, **params)
        saved = await persist_snapshot(self.db, org_id, lambda s: apply_customer(s, customer["id"]))
        if saved.stripe_customer_id != customer["id"]:
            logger.warning(f"Org {org_id} already had customer {saved.stripe_customer_id}; ignoring {customer['id']}")

        logger.info(f"Stripe customer ready for org {org_id}: {saved.stripe_customer_id}")
        _refresh(organization, saved)
        return saved.stripe_customer_id

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    async def start_checkout(
        self,
        organization: Dict[str, Any],
        plan_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """
        Create a hosted checkout session for a new subscription.

        The local snapshot is not changed; the subscription is linked when
        checkout.session.completed arrives or the success page confirms it.

        Returns:
            Dict with session_id and url
        """
        plan = self._require_purchasable_plan(plan_id)
        customer_id = await self.ensure_customer(organization)
        org_id = organization["organization_id"]

        metadata = {"organization_id": org_id, "plan": plan.id.value}
        session = self._call(
            "create checkout session",
            org_id,
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": plan.external_price_ref, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )

        logger.info(f"Checkout session created for org {org_id}: {session['id']} plan={plan.id.value}")
        return {"session_id": session["id"], "url": session["url"]}

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._call("retrieve checkout session", None, stripe.checkout.Session.retrieve, session_id)

    # -------------------------------------------------------------------------
    # Subscription lifecycle
    # -------------------------------------------------------------------------

    async def create_or_update_subscription(
        self,
        organization: Dict[str, Any],
        plan_id: str,
    ) -> SubscriptionSnapshot:
        """Create a subscription, or move the existing one to a new price with proration."""
        plan = self._require_purchasable_plan(plan_id)
        org_id = organization["organization_id"]
        snapshot = snapshot_from_document(organization)
        metadata = {"organization_id": org_id, "plan": plan.id.value}

        if not snapshot.stripe_subscription_id:
            customer_id = await self.ensure_customer(organization)
            remote = self._call(
                "create subscription",
                org_id,
                stripe.Subscription.create,
                customer=customer_id,
                items=[{"price": plan.external_price_ref}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.payment_intent"],
                metadata=metadata,
                idempotency_key=f"subscription-{org_id}-{plan.id.value}",
            )
            logger.info(f"Subscription created for org {org_id}: {remote.get('id')}")
        else:
            subscription_id = snapshot.stripe_subscription_id
            current = self._call("retrieve subscription", org_id, stripe.Subscription.retrieve, subscription_id)
            item_id = remote_item_id(current)
            if not item_id:
                logger.error(f"Subscription {subscription_id} for org {org_id} has no items")
                raise ProviderUnavailableError("Failed to update subscription")
            remote = self._call(
                "update subscription",
                org_id,
                stripe.Subscription.modify,
                subscription_id,
                items=[{"id": item_id, "price": plan.external_price_ref}],
                proration_behavior="create_prorations",
                metadata=metadata,
            )
            logger.info(f"Subscription {subscription_id} moved to {plan.id.value} for org {org_id}")

        return await self.sync_snapshot(organization, remote)

    async def set_cancel_flag(self, organization: Dict[str, Any], cancel_at_period_end: bool) -> SubscriptionSnapshot:
        snapshot = snapshot_from_document(organization)
        if not snapshot.stripe_subscription_id:
            raise NoActiveSubscriptionError()

        remote = self._call(
            "update subscription",
            organization["organization_id"],
            stripe.Subscription.modify,
            snapshot.stripe_subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        return await self.sync_snapshot(organization, remote)

    async def cancel_now(self, organization: Dict[str, Any]) -> SubscriptionSnapshot:
        """Cancel the Stripe subscription immediately."""
        snapshot = snapshot_from_document(organization)
        if not snapshot.stripe_subscription_id:
            raise NoActiveSubscriptionError()

        remote = self._call(
            "cancel subscription",
            organization["organization_id"],
            stripe.Subscription.cancel,
            snapshot.stripe_subscription_id,
        )
        return await self.sync_snapshot(organization, remote)

    def retrieve_subscription(self, subscription_id: str, organization_id: Optional[str] = None) -> Dict[str, Any]:
        return self._call("retrieve subscription", organization_id, stripe.Subscription.retrieve, subscription_id)

    async def fetch_remote(self, organization: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Remote subscription with latest invoice, or None when none is linked."""
        snapshot = snapshot_from_document(organization)
        if not snapshot.stripe_subscription_id:
            return None
        return self._call(
            "retrieve subscription",
            organization["organization_id"],
            stripe.Subscription.retrieve,
            snapshot.stripe_subscription_id,
            expand=["latest_invoice"],
        )

    # -------------------------------------------------------------------------
    # Billing portal
    # -------------------------------------------------------------------------

    async def open_portal(self, organization: Dict[str, Any], return_url: str) -> Dict[str, Any]:
        snapshot = snapshot_from_document(organization)
        if not snapshot.stripe_customer_id:
            raise NoCustomerError()

        session = self._call(
            "create billing portal session",
            organization["organization_id"],
            stripe.billing_portal.Session.create,
            customer=snapshot.stripe_customer_id,
            return_url=return_url,
        )
        logger.info(f"Billing portal session created for org {organization['organization_id']}")
        return {"url": session["url"]}

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync_snapshot(self, organization: Dict[str, Any], remote: Dict[str, Any]) -> SubscriptionSnapshot:
        """Overwrite the local snapshot from a remote subscription (single atomic write)."""
        saved = await persist_snapshot(
            self.db,
            organization["organization_id"],
            lambda current: apply_remote_subscription(current, remote, self.catalog),
        )
        return _refresh(organization, saved)


def get_stripe_service() -> StripeService:
    """FastAPI dependency: gateway bound to the process catalog."""
    return StripeService(get_plan_catalog())
