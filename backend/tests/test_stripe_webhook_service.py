"""
Tests for Stripe webhook reconciliation.

Covers: signature handling, idempotent re-delivery, subscription
created/updated/deleted, paid and failed invoices, checkout completion,
and failure bookkeeping in stripe_events.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import stripe

from services.billing_errors import ProviderUnavailableError, SignatureInvalidError
from services.entitlements import is_access_active
from services.stripe_service import StripeService
from services.stripe_webhook_service import StripeWebhookService
from services.subscription_sync import remote_period
from conftest import ORG_ID, TEST_PRICE_IDS


@pytest.fixture
def service(db, catalog):
    return StripeWebhookService(StripeService(catalog, db=db), db=db, webhook_secret="whsec_test")


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": obj}}


def _event_status(db, event_id="evt_1"):
    return next(doc for doc in db.stripe_events.docs if doc["event_id"] == event_id)["status"]


class TestSignature:
    def test_missing_secret_rejects(self, db, catalog, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        service = StripeWebhookService(StripeService(catalog, db=db), db=db)
        with patch("stripe.Webhook.construct_event") as construct:
            with pytest.raises(SignatureInvalidError):
                service.construct_event(b"{}", "t=1,v1=abc")
        construct.assert_not_called()

    def test_missing_header_rejects(self, service):
        with pytest.raises(SignatureInvalidError):
            service.construct_event(b"{}", None)

    @pytest.mark.asyncio
    async def test_bad_signature_mutates_nothing(self, service, db, seed_org):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(SignatureInvalidError):
                await service.process_webhook(b"{}", "t=1,v1=bad")

        assert db.stripe_events.docs == []
        db.organizations.update_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_verified_event_is_processed(self, service, db):
        event = _event("charge.refunded", {"id": "ch_1"})
        with patch("stripe.Webhook.construct_event", return_value=event) as construct:
            success, message, details = await service.process_webhook(b"payload", "t=1,v1=ok")

        construct.assert_called_once_with(b"payload", "t=1,v1=ok", "whsec_test")
        assert success is True
        assert details == {"handled": False, "event_type": "charge.refunded"}
        assert _event_status(db) == "PROCESSED"


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_processed_event_is_skipped(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        event = _event("customer.subscription.updated", make_remote_subscription(TEST_PRICE_IDS["professional"]))

        await service.process_event(event)
        writes = db.organizations.update_one.await_count

        success, message, _ = await service.process_event(event)
        assert success is True
        assert message == "Already processed"
        assert db.organizations.update_one.await_count == writes
        assert db.snapshot().plan == "professional"

    @pytest.mark.asyncio
    async def test_failed_event_is_retried(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        db.stripe_events.docs.append({"event_id": "evt_1", "type": "customer.subscription.updated", "status": "FAILED"})
        event = _event("customer.subscription.updated", make_remote_subscription(TEST_PRICE_IDS["enterprise"]))

        _, message, _ = await service.process_event(event)
        assert message == "Processed"
        assert _event_status(db) == "PROCESSED"
        assert db.snapshot().plan == "enterprise"

    @pytest.mark.asyncio
    async def test_in_flight_delivery_is_not_handled_twice(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        db.stripe_events.docs.append({
            "event_id": "evt_1", "type": "customer.subscription.updated",
            "status": "PROCESSING", "claimed_at": datetime.now(timezone.utc),
        })
        event = _event("customer.subscription.updated", make_remote_subscription(TEST_PRICE_IDS["enterprise"]))

        _, message, _ = await service.process_event(event)
        assert message == "Already processed"
        db.organizations.update_one.assert_not_awaited()
        assert db.audit_logs.docs == []
        assert db.snapshot().plan == "basic"

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_retaken(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        db.stripe_events.docs.append({
            "event_id": "evt_1", "type": "customer.subscription.updated",
            "status": "PROCESSING", "claimed_at": datetime.now(timezone.utc) - timedelta(hours=1),
        })
        event = _event("customer.subscription.updated", make_remote_subscription(TEST_PRICE_IDS["enterprise"]))

        _, message, _ = await service.process_event(event)
        assert message == "Processed"
        assert _event_status(db) == "PROCESSED"
        assert db.snapshot().plan == "enterprise"


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_updated_syncs_snapshot(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_customer_id="cus_123", stripe_subscription_id="sub_123")
        remote = make_remote_subscription(TEST_PRICE_IDS["professional"], cancel_at_period_end=True)

        _, _, details = await service.process_event(_event("customer.subscription.updated", remote))

        assert details["handled"] is True
        assert details["organization_id"] == ORG_ID
        stored = db.snapshot()
        assert stored.plan == "professional"
        assert stored.max_assets == 500
        assert stored.cancel_at_period_end is True
        assert [d["action"] for d in db.audit_logs.docs] == ["SUBSCRIPTION_SYNCED"]

        record = db.stripe_events.docs[0]
        assert record["related_organization_id"] == ORG_ID
        assert record["related_subscription_id"] == "sub_123"

    @pytest.mark.asyncio
    async def test_past_due_becomes_inactive(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        remote = make_remote_subscription(TEST_PRICE_IDS["basic"], status="past_due")
        await service.process_event(_event("customer.subscription.updated", remote))
        assert db.snapshot().status == "inactive"

    @pytest.mark.asyncio
    async def test_deleted_keeps_limits_and_features(self, service, db, seed_org, catalog, make_remote_subscription):
        seed_org(plan="professional", stripe_subscription_id="sub_123")
        remote = make_remote_subscription(TEST_PRICE_IDS["professional"], status="canceled")

        await service.process_event(_event("customer.subscription.deleted", remote))

        stored = db.snapshot()
        assert stored.status == "cancelled"
        assert stored.plan == "professional"
        assert stored.max_assets == 500
        assert stored.features == catalog.get_plan("professional").feature_list()
        assert "SUBSCRIPTION_DELETED" in [d["action"] for d in db.audit_logs.docs]

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_a_no_op(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_subscription_id="sub_123")
        remote = make_remote_subscription(TEST_PRICE_IDS["enterprise"], sub_id="sub_unknown")

        success, _, details = await service.process_event(_event("customer.subscription.updated", remote))

        assert success is True
        assert details["handled"] is False
        assert details["reason"] == "no_organization"
        db.organizations.update_one.assert_not_awaited()
        assert _event_status(db) == "PROCESSED"


class TestInvoiceEvents:
    @pytest.mark.asyncio
    async def test_paid_invoice_refetches_subscription(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_customer_id="cus_123", stripe_subscription_id="sub_123")
        renewed = make_remote_subscription(TEST_PRICE_IDS["basic"], period_days=60)
        invoice = {"id": "in_1", "customer": "cus_123", "subscription": "sub_123"}

        with patch("stripe.Subscription.retrieve", return_value=renewed) as retrieve:
            _, _, details = await service.process_event(_event("invoice.payment_succeeded", invoice))

        retrieve.assert_called_once_with("sub_123")
        assert details["handled"] is True
        assert db.snapshot().current_period_end == remote_period(renewed)[1]
        assert "PAYMENT_SUCCEEDED" in [d["action"] for d in db.audit_logs.docs]

    @pytest.mark.asyncio
    async def test_subscription_ref_under_invoice_parent(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="basic", stripe_customer_id="cus_123", stripe_subscription_id="sub_123")
        invoice = {
            "id": "in_1", "customer": "cus_123",
            "parent": {"subscription_details": {"subscription": "sub_123"}},
        }
        with patch("stripe.Subscription.retrieve", return_value=make_remote_subscription(TEST_PRICE_IDS["basic"])) as retrieve:
            await service.process_event(_event("invoice.paid", invoice))
        retrieve.assert_called_once_with("sub_123")

    @pytest.mark.asyncio
    async def test_one_off_invoice_ignored(self, service, db, seed_org):
        seed_org(plan="basic", stripe_customer_id="cus_123")
        with patch("stripe.Subscription.retrieve") as retrieve:
            _, _, details = await service.process_event(_event("invoice.paid", {"id": "in_1", "customer": "cus_123"}))
        retrieve.assert_not_called()
        assert details == {"handled": False, "reason": "no_subscription"}

    @pytest.mark.asyncio
    async def test_payment_failed_only_audits(self, service, db, seed_org):
        seed_org(plan="basic", stripe_customer_id="cus_123", stripe_subscription_id="sub_123")
        before = db.snapshot()
        invoice = {"id": "in_1", "customer": "cus_123", "subscription": "sub_123", "attempt_count": 2}

        _, _, details = await service.process_event(_event("invoice.payment_failed", invoice))

        assert details["handled"] is True
        assert db.snapshot() == before
        audit = db.audit_logs.docs[-1]
        assert audit["action"] == "PAYMENT_FAILED"
        assert audit["metadata"]["attempt_count"] == 2


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_links_subscription_by_metadata(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="free", stripe_customer_id="cus_123")
        session = {
            "id": "cs_1", "mode": "subscription", "customer": "cus_123",
            "subscription": "sub_new", "metadata": {"organization_id": ORG_ID, "plan": "basic"},
        }
        remote = make_remote_subscription(TEST_PRICE_IDS["basic"], sub_id="sub_new")
        with patch("stripe.Subscription.retrieve", return_value=remote):
            _, _, details = await service.process_event(_event("checkout.session.completed", session))

        assert details["handled"] is True
        stored = db.snapshot()
        assert stored.plan == "basic"
        assert stored.max_assets == 100
        assert stored.stripe_subscription_id == "sub_new"

    @pytest.mark.asyncio
    async def test_falls_back_to_customer_ref(self, service, db, seed_org, make_remote_subscription):
        seed_org(plan="free", stripe_customer_id="cus_123")
        session = {"id": "cs_1", "mode": "subscription", "customer": "cus_123", "subscription": "sub_new", "metadata": {}}
        remote = make_remote_subscription(TEST_PRICE_IDS["enterprise"], sub_id="sub_new")
        with patch("stripe.Subscription.retrieve", return_value=remote):
            await service.process_event(_event("checkout.session.completed", session))
        assert db.snapshot().plan == "enterprise"

    @pytest.mark.asyncio
    async def test_linked_subscription_replaces_expired_trial_window(
        self, service, db, seed_org, make_remote_subscription
    ):
        now = datetime.now(timezone.utc)
        seed_org(
            plan="free", stripe_customer_id="cus_123",
            start_date=now - timedelta(days=31), end_date=now - timedelta(days=1),
        )
        session = {
            "id": "cs_1", "mode": "subscription", "customer": "cus_123",
            "subscription": "sub_new", "metadata": {"organization_id": ORG_ID},
        }
        remote = make_remote_subscription(TEST_PRICE_IDS["professional"], sub_id="sub_new")
        remote["current_period_start"] = int((now - timedelta(days=1)).timestamp())
        remote["current_period_end"] = int((now + timedelta(days=29)).timestamp())

        with patch("stripe.Subscription.retrieve", return_value=remote):
            await service.process_event(_event("checkout.session.completed", session))

        stored = db.snapshot()
        assert stored.plan == "professional"
        assert stored.end_date == stored.current_period_end
        assert is_access_active(stored, now)

    @pytest.mark.asyncio
    async def test_payment_mode_ignored(self, service, db):
        session = {"id": "cs_1", "mode": "payment"}
        _, _, details = await service.process_event(_event("checkout.session.completed", session))
        assert details == {"handled": False, "mode": "payment"}


class TestHandlerFailure:
    @pytest.mark.asyncio
    async def test_marks_failed_and_reraises(self, service, db, seed_org):
        seed_org(plan="basic", stripe_customer_id="cus_123", stripe_subscription_id="sub_123")
        invoice = {"id": "in_1", "customer": "cus_123", "subscription": "sub_123"}

        with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(ProviderUnavailableError):
                await service.process_event(_event("invoice.paid", invoice))

        record = db.stripe_events.docs[0]
        assert record["status"] == "FAILED"
        assert record["error"]
        assert "STRIPE_EVENT_FAILED" in [d["action"] for d in db.audit_logs.docs]

