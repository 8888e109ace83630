"""Snapshot sync - reducers over SubscriptionSnapshot plus the atomic write.

Reducers are pure: (snapshot, remote) -> snapshot. Applying the same remote
object twice yields the same snapshot, so webhook re-delivery is harmless.

persist_snapshot() is the only writer of organizations.subscription. It
writes the whole snapshot in one update_one guarded by subscription.version;
on a version miss it reloads and re-applies the reducer.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from models import SubscriptionSnapshot, SubscriptionStatus
from services.plan_registry import PlanCatalog
from services.billing_errors import OrganizationNotFoundError, SnapshotConflictError

logger = logging.getLogger(__name__)

MAX_PERSIST_ATTEMPTS = 3

Reducer = Callable[[SubscriptionSnapshot], SubscriptionSnapshot]

# Stripe subscription status -> local status
REMOTE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
}


# ============================================================================
# REMOTE OBJECT ACCESSORS
# ============================================================================

def _ref_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _first_item(remote: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    items = (remote.get("items") or {}).get("data") or []
    return items[0] if items else None


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def map_remote_status(remote_status: Optional[str]) -> SubscriptionStatus:
    return REMOTE_STATUS_MAP.get((remote_status or "").lower(), SubscriptionStatus.INACTIVE)


def remote_price_id(remote: Dict[str, Any]) -> Optional[str]:
    item = _first_item(remote)
    if not item:
        return None
    return _ref_id(item.get("price"))


def remote_item_id(remote: Dict[str, Any]) -> Optional[str]:
    item = _first_item(remote)
    return item.get("id") if item else None


def remote_period(remote: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Billing period bounds from unix seconds.

    Newer Stripe API versions carry the period on the subscription item
    instead of the subscription.
    """
    start = remote.get("current_period_start")
    end = remote.get("current_period_end")
    if start is None or end is None:
        item = _first_item(remote) or {}
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return _from_timestamp(start), _from_timestamp(end)


# ============================================================================
# REDUCERS
# ============================================================================

def apply_remote_subscription(
    snapshot: SubscriptionSnapshot,
    remote: Dict[str, Any],
    catalog: PlanCatalog,
) -> SubscriptionSnapshot:
    """Copy plan, limits, features, status, period and cancel flag from a remote subscription.

    end_date follows the billing period once a provider subscription is linked,
    replacing the trial window set at organization creation.
    """
    price_id = remote_price_id(remote)
    plan = catalog.get_plan(catalog.plan_for_price(price_id))
    period_start, period_end = remote_period(remote)

    return snapshot.model_copy(update={
        "plan": plan.id.value,
        "status": map_remote_status(remote.get("status")).value,
        "max_assets": plan.max_assets,
        "features": plan.feature_list(),
        "stripe_customer_id": _ref_id(remote.get("customer")) or snapshot.stripe_customer_id,
        "stripe_subscription_id": remote.get("id") or snapshot.stripe_subscription_id,
        "stripe_price_id": price_id,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "end_date": period_end,
        "cancel_at_period_end": bool(remote.get("cancel_at_period_end")),
    })


def apply_subscription_deleted(snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
    """Provider deleted the subscription: only the status changes."""
    return snapshot.model_copy(update={"status": SubscriptionStatus.CANCELLED.value})


def apply_customer(snapshot: SubscriptionSnapshot, customer_id: str) -> SubscriptionSnapshot:
    """Record a customer reference unless one is already set."""
    if snapshot.stripe_customer_id:
        return snapshot
    return snapshot.model_copy(update={"stripe_customer_id": customer_id})


def snapshot_from_document(organization: Optional[Dict[str, Any]]) -> SubscriptionSnapshot:
    return SubscriptionSnapshot.model_validate((organization or {}).get("subscription") or {})


def _comparable(snapshot: SubscriptionSnapshot) -> Dict[str, Any]:
    return snapshot.model_dump(exclude={"version"})


# ============================================================================
# ATOMIC WRITE
# ============================================================================

async def persist_snapshot(
    db,
    organization_id: str,
    reducer: Reducer,
    max_attempts: int = MAX_PERSIST_ATTEMPTS,
) -> SubscriptionSnapshot:
    """Apply reducer to the stored snapshot and write it back atomically.

    Raises OrganizationNotFoundError when the organization does not exist and
    SnapshotConflictError when every attempt loses the version race.
    """
    for attempt in range(1, max_attempts + 1):
        doc = await db.organizations.find_one(
            {"organization_id": organization_id},
            {"_id": 0, "subscription": 1}
        )
        if not doc:
            raise OrganizationNotFoundError(f"Organization {organization_id} not found")

        current = snapshot_from_document(doc)
        updated = reducer(current)
        if _comparable(updated) == _comparable(current):
            return current

        new_snapshot = updated.model_copy(update={"version": current.version + 1})
        # Documents written before versioning have no version field
        expected_version = {"$in": [0, None]} if current.version == 0 else current.version
        result = await db.organizations.update_one(
            {"organization_id": organization_id, "subscription.version": expected_version},
            {"$set": {
                "subscription": new_snapshot.model_dump(),
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        if result.matched_count:
            logger.info(
                f"Subscription snapshot saved org={organization_id} plan={new_snapshot.plan} "
                f"status={new_snapshot.status} version={new_snapshot.version}"
            )
            return new_snapshot

        logger.warning(
            f"Subscription snapshot version conflict org={organization_id} "
            f"expected={current.version} attempt={attempt}/{max_attempts}"
        )

    raise SnapshotConflictError()
