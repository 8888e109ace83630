"""Subscription Service - Orchestrates subscription intents for an organization.

Decides, for each request, which billing gateway calls to make:
- change_plan: free -> paid goes through hosted checkout, paid -> paid updates
  the Stripe subscription in place and syncs the snapshot in the same call
- cancel / reactivate toggle cancel-at-period-end (or cancel immediately)
- usage, details and entitlement summaries are read-only

The organization dict passed in is the one loaded by the request guard; the
gateway refreshes its "subscription" key after every sync.
"""
import logging
from typing import Optional, Dict, Any

from database import database
from models import AuditAction, PlanId, SubscriptionStatus
from services.plan_registry import PlanCatalog, get_plan_catalog
from services.stripe_service import StripeService
from services.organization_service import OrganizationService
from services.entitlements import summarize, usage_percentage
from services.subscription_sync import remote_period, snapshot_from_document
from services.billing_errors import (
    AlreadyOnPlanError,
    CheckoutSessionNotFoundError,
    NoSubscriptionError,
    ProviderUnavailableError,
    SubscriptionExistsError,
)
from utils.audit import create_audit_log, snapshot_audit_state

logger = logging.getLogger(__name__)

# Checkout sessions in these states have created the subscription
COMPLETED_CHECKOUT_STATUSES = {"complete"}


def _ref_id(value: Any) -> Optional[str]:
    if isinstance(value, str) or value is None:
        return value
    return value.get("id")


class SubscriptionService:
    """Subscription intents for one organization at a time."""

    def __init__(self, stripe_service: StripeService, catalog: PlanCatalog, db=None):
        self.stripe_service = stripe_service
        self.catalog = catalog
        self.db = db
        self.organizations = OrganizationService(db=db)

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    async def _audit(self, action: AuditAction, organization: Dict[str, Any], actor_id: Optional[str], **kwargs):
        await create_audit_log(
            action=action,
            actor_id=actor_id,
            organization_id=organization["organization_id"],
            resource_type="subscription",
            db=self._get_db(),
            **kwargs,
        )

    # =========================================================================
    # Read-only views
    # =========================================================================

    def list_plans(self):
        return self.catalog.get_all_plans()

    async def get_usage(self, organization: Dict[str, Any]) -> Dict[str, Any]:
        """Hardware/software/user counts against the asset limit."""
        snapshot = snapshot_from_document(organization)
        counts = await self.organizations.get_counts(
            organization["organization_id"], "hardware", "software", "users"
        )
        return {
            "hardware": counts["hardware"],
            "software": counts["software"],
            "users": counts["users"],
            "max_assets": snapshot.max_assets,
            "usage_percentage": usage_percentage(counts["hardware"], snapshot.max_assets),
        }

    async def get_entitlements(self, organization: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = snapshot_from_document(organization)
        asset_count = await self.organizations.count_assets(organization["organization_id"])
        return summarize(snapshot, asset_count)

    async def get_details(self, organization: Dict[str, Any]) -> Dict[str, Any]:
        """Local snapshot plus a best-effort view of the Stripe subscription."""
        snapshot = snapshot_from_document(organization)
        stripe_subscription = None
        try:
            remote = await self.stripe_service.fetch_remote(organization)
        except ProviderUnavailableError:
            logger.warning(f"Stripe subscription unavailable for org {organization['organization_id']}; returning local state")
            remote = None

        if remote:
            invoice = remote.get("latest_invoice")
            period_start, period_end = remote_period(remote)
            stripe_subscription = {
                "id": remote.get("id"),
                "status": remote.get("status"),
                "current_period_start": period_start.isoformat() if period_start else None,
                "current_period_end": period_end.isoformat() if period_end else None,
                "cancel_at_period_end": bool(remote.get("cancel_at_period_end")),
                "latest_invoice": {
                    "id": invoice.get("id"),
                    "status": invoice.get("status"),
                    "amount_paid": invoice.get("amount_paid"),
                    "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                } if isinstance(invoice, dict) else None,
            }

        return {
            "subscription": snapshot.model_dump(exclude={"version"}),
            "plan": self.catalog.get_plan(snapshot.plan).to_public_dict(),
            "stripe_subscription": stripe_subscription,
        }

    # =========================================================================
    # Plan changes
    # =========================================================================

    async def start_checkout(
        self,
        organization: Dict[str, Any],
        plan_id: str,
        success_url: str,
        cancel_url: str,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        snapshot = snapshot_from_document(organization)
        if plan_id == snapshot.plan:
            raise AlreadyOnPlanError()
        # A second checkout would leave the linked subscription billing alongside the new one
        if snapshot.stripe_subscription_id and snapshot.status != SubscriptionStatus.CANCELLED.value:
            raise SubscriptionExistsError()

        intent = await self.stripe_service.start_checkout(organization, plan_id, success_url, cancel_url)
        await self._audit(
            AuditAction.CHECKOUT_STARTED, organization, actor_id,
            metadata={"plan": plan_id, "session_id": intent["session_id"]},
        )
        return intent

    async def change_plan(
        self,
        organization: Dict[str, Any],
        requested_plan: str,
        success_url: str,
        cancel_url: str,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move the organization to requested_plan.

        Returns either a checkout intent ({"action": "checkout", "session_id", "url"})
        or the synced subscription ({"action": "updated", "subscription"}).
        """
        snapshot = snapshot_from_document(organization)
        if requested_plan == snapshot.plan:
            raise AlreadyOnPlanError(f"Already on the {snapshot.plan} plan")

        if snapshot.plan == PlanId.FREE.value:
            intent = await self.start_checkout(organization, requested_plan, success_url, cancel_url, actor_id)
            return {"action": "checkout", **intent}

        before = snapshot_audit_state(snapshot.model_dump())
        updated = await self.stripe_service.create_or_update_subscription(organization, requested_plan)
        await self._audit(
            AuditAction.PLAN_CHANGED, organization, actor_id,
            resource_id=updated.stripe_subscription_id,
            before_state=before,
            after_state=snapshot_audit_state(updated.model_dump()),
        )
        logger.info(f"Plan changed for org {organization['organization_id']}: {snapshot.plan} -> {updated.plan}")
        return {"action": "updated", "subscription": updated.model_dump(exclude={"version"})}

    async def confirm_checkout(
        self,
        organization: Dict[str, Any],
        session_id: str,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Link the subscription from a completed checkout session (success page)."""
        session = self.stripe_service.retrieve_checkout_session(session_id)
        snapshot = snapshot_from_document(organization)
        org_id = organization["organization_id"]

        session_org = (session.get("metadata") or {}).get("organization_id")
        session_customer = _ref_id(session.get("customer"))
        if session_org != org_id and (not session_customer or session_customer != snapshot.stripe_customer_id):
            logger.warning(f"Checkout session {session_id} does not belong to org {org_id}")
            raise CheckoutSessionNotFoundError()

        subscription_id = _ref_id(session.get("subscription"))
        if session.get("status") not in COMPLETED_CHECKOUT_STATUSES or not subscription_id:
            return {
                "linked": False,
                "checkout_status": session.get("status"),
                "subscription": snapshot.model_dump(exclude={"version"}),
            }

        remote = self.stripe_service.retrieve_subscription(subscription_id, org_id)
        updated = await self.stripe_service.sync_snapshot(organization, remote)
        await self._audit(
            AuditAction.CHECKOUT_CONFIRMED, organization, actor_id,
            resource_id=subscription_id,
            metadata={"session_id": session_id, "plan": updated.plan},
        )
        return {
            "linked": True,
            "checkout_status": session.get("status"),
            "subscription": updated.model_dump(exclude={"version"}),
        }

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel(
        self,
        organization: Dict[str, Any],
        at_period_end: bool = True,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if at_period_end:
            updated = await self.stripe_service.set_cancel_flag(organization, True)
            message = "Subscription will be cancelled at the end of the current period"
        else:
            updated = await self.stripe_service.cancel_now(organization)
            message = "Subscription cancelled immediately"

        await self._audit(
            AuditAction.SUBSCRIPTION_CANCEL_REQUESTED, organization, actor_id,
            resource_id=updated.stripe_subscription_id,
            metadata={"at_period_end": at_period_end},
        )
        return {"message": message, "subscription": updated.model_dump(exclude={"version"})}

    async def reactivate(self, organization: Dict[str, Any], actor_id: Optional[str] = None) -> Dict[str, Any]:
        snapshot = snapshot_from_document(organization)
        if not snapshot.stripe_subscription_id:
            raise NoSubscriptionError()

        updated = await self.stripe_service.set_cancel_flag(organization, False)
        await self._audit(
            AuditAction.SUBSCRIPTION_REACTIVATED, organization, actor_id,
            resource_id=updated.stripe_subscription_id,
        )
        return {"message": "Subscription reactivated", "subscription": updated.model_dump(exclude={"version"})}

    # =========================================================================
    # Billing portal / maintenance
    # =========================================================================

    async def open_portal(self, organization: Dict[str, Any], return_url: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        portal = await self.stripe_service.open_portal(organization, return_url)
        await self._audit(AuditAction.BILLING_PORTAL_OPENED, organization, actor_id)
        return portal

    async def resync(self, organization: Dict[str, Any], actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Re-read the Stripe subscription and overwrite the local snapshot."""
        remote = await self.stripe_service.fetch_remote(organization)
        if remote is None:
            raise NoSubscriptionError("No subscription to sync")
        before = snapshot_audit_state(organization.get("subscription"))
        updated = await self.stripe_service.sync_snapshot(organization, remote)
        await self._audit(
            AuditAction.SUBSCRIPTION_SYNCED, organization, actor_id,
            resource_id=updated.stripe_subscription_id,
            before_state=before,
            after_state=snapshot_audit_state(updated.model_dump()),
        )
        return {"subscription": updated.model_dump(exclude={"version"})}


def get_subscription_service() -> SubscriptionService:
    """FastAPI dependency."""
    catalog = get_plan_catalog()
    return SubscriptionService(StripeService(catalog), catalog)
