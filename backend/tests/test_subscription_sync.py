"""Tests for snapshot reducers and the version-guarded write."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from models import SubscriptionSnapshot, default_free_snapshot
from services.billing_errors import OrganizationNotFoundError, SnapshotConflictError
from services.entitlements import is_access_active
from services.subscription_sync import (
    apply_customer,
    apply_remote_subscription,
    apply_subscription_deleted,
    map_remote_status,
    persist_snapshot,
    remote_period,
)
from conftest import ORG_ID, TEST_PRICE_IDS


class TestReducers:
    def test_remote_subscription_sets_plan_limits_and_refs(self, catalog, make_remote_subscription):
        remote = make_remote_subscription(TEST_PRICE_IDS["professional"], cancel_at_period_end=True)
        snapshot = apply_remote_subscription(SubscriptionSnapshot(), remote, catalog)

        assert snapshot.plan == "professional"
        assert snapshot.status == "active"
        assert snapshot.max_assets == 500
        assert snapshot.features == ["basic_scanning", "advanced_analytics", "api_access", "priority_support"]
        assert snapshot.stripe_subscription_id == "sub_123"
        assert snapshot.stripe_customer_id == "cus_123"
        assert snapshot.stripe_price_id == TEST_PRICE_IDS["professional"]
        assert snapshot.current_period_start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert snapshot.current_period_end == datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert snapshot.cancel_at_period_end is True

    def test_applying_twice_is_stable(self, catalog, make_remote_subscription):
        remote = make_remote_subscription(TEST_PRICE_IDS["basic"])
        once = apply_remote_subscription(SubscriptionSnapshot(), remote, catalog)
        twice = apply_remote_subscription(once, remote, catalog)
        assert once == twice

    def test_unknown_price_resolves_to_free(self, catalog, make_remote_subscription):
        remote = make_remote_subscription("price_retired")
        snapshot = apply_remote_subscription(SubscriptionSnapshot(plan="basic", max_assets=100), remote, catalog)
        assert snapshot.plan == "free"
        assert snapshot.max_assets == 10

    def test_period_read_from_item_when_missing_on_subscription(self, make_remote_subscription):
        remote = make_remote_subscription(TEST_PRICE_IDS["basic"])
        item = remote["items"]["data"][0]
        item["current_period_start"] = remote.pop("current_period_start")
        item["current_period_end"] = remote.pop("current_period_end")

        start, end = remote_period(remote)
        assert start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert end == datetime(2026, 1, 31, tzinfo=timezone.utc)

    def test_status_mapping(self):
        assert map_remote_status("active").value == "active"
        assert map_remote_status("trialing").value == "active"
        assert map_remote_status("canceled").value == "cancelled"
        assert map_remote_status("past_due").value == "inactive"
        assert map_remote_status("incomplete").value == "inactive"
        assert map_remote_status(None).value == "inactive"

    def test_deleted_only_changes_status(self, catalog):
        snapshot = SubscriptionSnapshot(
            plan="professional", max_assets=500,
            features=catalog.get_plan("professional").feature_list(),
            stripe_subscription_id="sub_123",
        )
        deleted = apply_subscription_deleted(snapshot)
        assert deleted.status == "cancelled"
        assert deleted.model_dump(exclude={"status"}) == snapshot.model_dump(exclude={"status"})

    def test_customer_ref_is_not_overwritten(self):
        assert apply_customer(SubscriptionSnapshot(), "cus_new").stripe_customer_id == "cus_new"
        existing = SubscriptionSnapshot(stripe_customer_id="cus_old")
        assert apply_customer(existing, "cus_new").stripe_customer_id == "cus_old"

    def test_billing_period_replaces_trial_window(self, catalog, make_remote_subscription):
        now = datetime.now(timezone.utc)
        expired_trial = default_free_snapshot(now - timedelta(days=31))
        assert not is_access_active(expired_trial, now)

        remote = make_remote_subscription(TEST_PRICE_IDS["basic"])
        remote["current_period_start"] = int((now - timedelta(days=1)).timestamp())
        remote["current_period_end"] = int((now + timedelta(days=29)).timestamp())
        snapshot = apply_remote_subscription(expired_trial, remote, catalog)

        assert snapshot.end_date == snapshot.current_period_end
        assert is_access_active(snapshot, now)


class TestPersistSnapshot:
    @pytest.mark.asyncio
    async def test_writes_and_bumps_version(self, db, seed_org, catalog):
        seed_org(plan="free")

        def upgrade(s):
            return s.model_copy(update={"plan": "basic", "max_assets": 100})

        saved = await persist_snapshot(db, ORG_ID, upgrade)
        assert saved.version == 1
        stored = db.snapshot()
        assert stored.plan == "basic"
        assert stored.max_assets == 100
        assert stored.version == 1

        saved = await persist_snapshot(db, ORG_ID, lambda s: s.model_copy(update={"max_assets": 101}))
        assert saved.version == 2
        assert db.snapshot().version == 2

    @pytest.mark.asyncio
    async def test_unchanged_snapshot_skips_write(self, db, seed_org):
        seed_org(plan="free")
        saved = await persist_snapshot(db, ORG_ID, lambda s: s)
        assert saved.version == 0
        db.organizations.update_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_organization(self, db):
        with pytest.raises(OrganizationNotFoundError):
            await persist_snapshot(db, "ORG-MISSING", lambda s: s)

    @pytest.mark.asyncio
    async def test_retries_after_concurrent_write(self, db, seed_org):
        seed_org(plan="free")
        write = db.organizations.update_one.side_effect
        calls = {"n": 0}

        async def racing_update(query, update, **kw):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another writer bumps the version between our read and write
                db.organization()["subscription"]["version"] = 1
                db.organization()["subscription"]["cancel_at_period_end"] = True
            return await write(query, update, **kw)

        db.organizations.update_one.side_effect = racing_update

        saved = await persist_snapshot(db, ORG_ID, lambda s: s.model_copy(update={"max_assets": 42}))
        assert calls["n"] == 2
        assert saved.version == 2
        stored = db.snapshot()
        assert stored.max_assets == 42
        # The concurrent change survives the retry
        assert stored.cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, db, seed_org):
        seed_org(plan="free")
        db.organizations.update_one.side_effect = None
        db.organizations.update_one.return_value = MagicMock(matched_count=0)

        with pytest.raises(SnapshotConflictError):
            await persist_snapshot(db, ORG_ID, lambda s: s.model_copy(update={"max_assets": 42}))
        assert db.organizations.update_one.await_count == 3
