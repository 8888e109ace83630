"""Stripe Webhook Service - Reconciles organization snapshots with Stripe events.

Key Principles:
1. Signature verification: every event is verified before it is looked at
2. Idempotency: event ids are recorded in stripe_events; processed ids are skipped
3. Handlers are reducers over the snapshot, so re-delivery is harmless anyway
4. Plan is derived from the subscription price id only
5. Unknown events and unknown organizations are acknowledged as no-ops

Events Handled:
- checkout.session.completed (links the checkout-created subscription)
- customer.subscription.created
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_succeeded / invoice.paid
- invoice.payment_failed
"""
import stripe
import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, Tuple

from pymongo import ReturnDocument

from database import database
from models import AuditAction, StripeEventRecord, StripeEventStatus
from services.plan_registry import get_plan_catalog
from services.stripe_service import StripeService, to_plain
from services.subscription_sync import apply_subscription_deleted, persist_snapshot
from services.organization_service import OrganizationService
from services.billing_errors import SignatureInvalidError
from utils.audit import create_audit_log, snapshot_audit_state

logger = logging.getLogger(__name__)

# A PROCESSING claim older than this belongs to a delivery that died mid-event
STALE_CLAIM_SECONDS = 600


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _ref_id(value: Any) -> Optional[str]:
    if isinstance(value, str) or value is None:
        return value
    return value.get("id")


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id on an invoice (moved under parent.subscription_details in newer API versions)."""
    subscription_id = _ref_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _ref_id(details.get("subscription"))


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging (no amounts, emails or secrets)."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    event_type = event.get("type") or ""
    if event_type.startswith("customer.subscription."):
        subscription_id = obj.get("id")
    elif event_type.startswith("invoice."):
        subscription_id = _invoice_subscription_id(obj)
    else:
        subscription_id = _ref_id(obj.get("subscription"))
    return {
        "event_id": event.get("id"),
        "event_type": event_type,
        "livemode": event.get("livemode"),
        "organization_id": metadata.get("organization_id"),
        "customer_id": _ref_id(obj.get("customer")),
        "subscription_id": subscription_id,
    }


class StripeWebhookService:
    """Stripe webhook handler with signature verification and idempotency."""

    def __init__(self, stripe_service: StripeService, db=None, webhook_secret: Optional[str] = None):
        self.stripe_service = stripe_service
        self._db = db
        self._webhook_secret = webhook_secret
        self.organizations = OrganizationService(db=db)

    @property
    def db(self):
        return self._db if self._db is not None else database.get_db()

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe signature and parse the event."""
        webhook_secret = self._webhook_secret or _get_webhook_secret()
        if not webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set - rejecting webhook")
            raise SignatureInvalidError("Webhook secret not configured")
        if not signature:
            raise SignatureInvalidError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise SignatureInvalidError() from e
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            raise SignatureInvalidError("Invalid payload") from e
        return to_plain(event)

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Raises SignatureInvalidError for unverifiable payloads and re-raises
        handler failures (after marking the event FAILED) so Stripe retries.

        Returns:
            (success, message, details)
        """
        event = self.construct_event(payload, signature)
        return await self.process_event(event)

    async def process_event(self, event: Dict[str, Any]) -> Tuple[bool, str, Optional[Dict]]:
        ctx = _extract_webhook_context(event)
        event_id = ctx["event_id"]
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s organization_id=%s customer_id=%s subscription_id=%s",
            event_id, ctx["event_type"], ctx["livemode"], ctx["organization_id"], ctx["customer_id"], ctx["subscription_id"],
        )

        if not await self._claim_event(event_id, ctx["event_type"]):
            logger.info("WEBHOOK_DUPLICATE event_id=%s", event_id)
            return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error("WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s", event_id, ctx["event_type"], e)
            await self._mark_event(event_id, StripeEventStatus.FAILED, error=str(e))
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role="system",
                organization_id=ctx["organization_id"],
                metadata={"event_id": event_id, "event_type": ctx["event_type"], "error": str(e)},
                db=self.db,
            )
            raise

        await self._mark_event(
            event_id,
            StripeEventStatus.PROCESSED,
            related_organization_id=result.get("organization_id"),
            related_subscription_id=result.get("subscription_id"),
        )
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s organization_id=%s handled=%s",
            event_id, ctx["event_type"], result.get("organization_id"), result.get("handled"),
        )
        return True, "Processed", result

    async def _claim_event(self, event_id: str, event_type: str) -> bool:
        """Atomically claim the event for this delivery.

        False when it was already processed or another delivery holds a live claim.
        """
        events = self.db.stripe_events
        record = StripeEventRecord(event_id=event_id, type=event_type).model_dump()
        try:
            await events.insert_one(record)
            return True
        except Exception as e:
            if "E11000" not in str(e) and "duplicate key" not in str(e).lower():
                raise

        # Known event: only a FAILED run or an abandoned PROCESSING claim is retaken
        claimed_at = record["claimed_at"]
        reclaimed = await events.find_one_and_update(
            {
                "event_id": event_id,
                "$or": [
                    {"status": StripeEventStatus.FAILED.value},
                    {
                        "status": StripeEventStatus.PROCESSING.value,
                        "claimed_at": {"$lt": claimed_at - timedelta(seconds=STALE_CLAIM_SECONDS)},
                    },
                ],
            },
            {"$set": {"status": StripeEventStatus.PROCESSING.value, "claimed_at": claimed_at, "error": None}},
            return_document=ReturnDocument.AFTER,
        )
        return reclaimed is not None

    async def _mark_event(self, event_id: str, status: StripeEventStatus, **fields):
        fields.update(status=status.value, processed_at=datetime.now(timezone.utc))
        await self.db.stripe_events.update_one({"event_id": event_id}, {"$set": fields})

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _sync_from_remote(self, organization: Dict, remote: Dict, event: Dict) -> Dict:
        before = snapshot_audit_state(organization.get("subscription"))
        snapshot = await self.stripe_service.sync_snapshot(organization, remote)
        after = snapshot_audit_state(snapshot.model_dump())
        if before != after:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_SYNCED,
                actor_role="system",
                organization_id=organization["organization_id"],
                resource_type="subscription",
                resource_id=snapshot.stripe_subscription_id,
                before_state=before,
                after_state=after,
                metadata={"event_id": event.get("id"), "event_type": event.get("type")},
                db=self.db,
            )
        return {
            "handled": True,
            "organization_id": organization["organization_id"],
            "subscription_id": snapshot.stripe_subscription_id,
            "plan": snapshot.plan,
            "status": snapshot.status,
        }

    async def _handle_subscription_change(self, subscription: Dict, event: Dict) -> Dict:
        """customer.subscription.created / updated: overwrite the snapshot from the event object."""
        subscription_id = subscription.get("id")
        logger.info(
            "HANDLER_START event.type=%s subscription_id=%s status=%s",
            event.get("type"), subscription_id, subscription.get("status"),
        )
        organization = await self.organizations.find_by_subscription_ref(subscription_id)
        if not organization:
            logger.warning(f"No organization for subscription {subscription_id} - ignoring")
            return {"handled": False, "reason": "no_organization", "subscription_id": subscription_id}

        result = await self._sync_from_remote(organization, subscription, event)
        logger.info("HANDLER_END organization_id=%s plan=%s status=%s", result["organization_id"], result["plan"], result["status"])
        return result

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        """customer.subscription.deleted: mark cancelled, keep limits and features as they are."""
        subscription_id = subscription.get("id")
        organization = await self.organizations.find_by_subscription_ref(subscription_id)
        if not organization:
            logger.warning(f"No organization for deleted subscription {subscription_id} - ignoring")
            return {"handled": False, "reason": "no_organization", "subscription_id": subscription_id}

        org_id = organization["organization_id"]
        snapshot = await persist_snapshot(self.db, org_id, apply_subscription_deleted)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_DELETED,
            actor_role="system",
            organization_id=org_id,
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"event_id": event.get("id")},
            db=self.db,
        )
        logger.info(f"Subscription {subscription_id} cancelled for org {org_id}")
        return {"handled": True, "organization_id": org_id, "subscription_id": subscription_id, "status": snapshot.status}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        """invoice.payment_succeeded / invoice.paid: re-fetch the subscription and sync (renewal moves the period)."""
        customer_id = _ref_id(invoice.get("customer"))
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} is not for a subscription - ignoring")
            return {"handled": False, "reason": "no_subscription"}

        organization = await self.organizations.find_by_customer_ref(customer_id)
        if not organization:
            logger.warning(f"No organization for customer {customer_id} - ignoring paid invoice")
            return {"handled": False, "reason": "no_organization", "subscription_id": subscription_id}

        org_id = organization["organization_id"]
        remote = self.stripe_service.retrieve_subscription(subscription_id, org_id)
        result = await self._sync_from_remote(organization, remote, event)
        await create_audit_log(
            action=AuditAction.PAYMENT_SUCCEEDED,
            actor_role="system",
            organization_id=org_id,
            resource_type="invoice",
            resource_id=invoice.get("id"),
            metadata={"event_id": event.get("id"), "subscription_id": subscription_id},
            db=self.db,
        )
        return result

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        """invoice.payment_failed: recorded only; the status change arrives as subscription.updated."""
        customer_id = _ref_id(invoice.get("customer"))
        organization = await self.organizations.find_by_customer_ref(customer_id)
        if not organization:
            logger.warning(f"No organization for customer {customer_id} - ignoring failed invoice")
            return {"handled": False, "reason": "no_organization"}

        org_id = organization["organization_id"]
        logger.warning(
            f"Payment failed for org {org_id} invoice={invoice.get('id')} attempt={invoice.get('attempt_count')}"
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_FAILED,
            actor_role="system",
            organization_id=org_id,
            resource_type="invoice",
            resource_id=invoice.get("id"),
            metadata={
                "event_id": event.get("id"),
                "subscription_id": _invoice_subscription_id(invoice),
                "attempt_count": invoice.get("attempt_count"),
            },
            db=self.db,
        )
        return {"handled": True, "organization_id": org_id, "subscription_id": _invoice_subscription_id(invoice)}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """checkout.session.completed: link the new subscription to its organization and sync."""
        if session.get("mode") != "subscription":
            logger.info(f"Ignoring checkout mode: {session.get('mode')}")
            return {"handled": False, "mode": session.get("mode")}
        return await self._link_checkout_session(session, event)

    async def _link_checkout_session(self, session: Dict, event: Dict) -> Dict:
        metadata = session.get("metadata") or {}
        customer_id = _ref_id(session.get("customer"))
        subscription_id = _ref_id(session.get("subscription"))
        if not subscription_id:
            logger.warning(f"Checkout session {session.get('id')} has no subscription - ignoring")
            return {"handled": False, "reason": "no_subscription"}

        organization = None
        if metadata.get("organization_id"):
            organization = await self.organizations.get_organization(metadata["organization_id"])
        if not organization and customer_id:
            organization = await self.organizations.find_by_customer_ref(customer_id)
        if not organization:
            logger.warning(f"No organization for checkout session {session.get('id')} - ignoring")
            return {"handled": False, "reason": "no_organization", "subscription_id": subscription_id}

        remote = self.stripe_service.retrieve_subscription(subscription_id, organization["organization_id"])
        return await self._sync_from_remote(organization, remote, event)


def get_stripe_webhook_service() -> StripeWebhookService:
    """FastAPI dependency."""
    return StripeWebhookService(StripeService(get_plan_catalog()))
