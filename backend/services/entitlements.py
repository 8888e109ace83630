"""Entitlement Evaluator.

Pure functions over a SubscriptionSnapshot. No database or Stripe access:
callers load the snapshot (and asset counts) and pass them in.

Check functions follow the (is_allowed, message, details) convention used by
the request gates:
- SUBSCRIPTION_INACTIVE: status is not active
- SUBSCRIPTION_EXPIRED: end_date or current_period_end is in the past
- FEATURE_NOT_AVAILABLE: feature missing from the synced feature list
- ASSET_LIMIT_REACHED: creating one more asset would exceed max_assets
"""
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from models import SubscriptionSnapshot, SubscriptionStatus, FeatureFlag
from services.plan_registry import PlanCatalog, FEATURE_METADATA

CheckResult = Tuple[bool, Optional[str], Optional[Dict[str, Any]]]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive datetimes unless the client is tz-aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _utc(now) if now is not None else datetime.now(timezone.utc)


def is_access_active(snapshot: SubscriptionSnapshot, now: Optional[datetime] = None) -> bool:
    """status == active and neither end_date nor current_period_end has passed."""
    return check_access(snapshot, now)[0]


def has_feature(snapshot: SubscriptionSnapshot, feature: FeatureFlag) -> bool:
    return FeatureFlag(feature).value in snapshot.features


def can_add_asset(snapshot: SubscriptionSnapshot, current_asset_count: int) -> bool:
    return current_asset_count < snapshot.max_assets


def remaining_grace_warning(snapshot: SubscriptionSnapshot) -> bool:
    """Access continues but the subscription will not renew."""
    return bool(snapshot.cancel_at_period_end)


def usage_percentage(asset_count: int, max_assets: int) -> int:
    """Percent of the asset limit in use, rounded half up. A non-positive limit counts as full."""
    if max_assets <= 0:
        return 100
    return int(math.floor(100 * asset_count / max_assets + 0.5))


def days_remaining(snapshot: SubscriptionSnapshot, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days until end_date (or current_period_end when there is no end_date)."""
    expires = _utc(snapshot.end_date) or _utc(snapshot.current_period_end)
    if expires is None:
        return None
    seconds = (expires - _now(now)).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def is_expired(snapshot: SubscriptionSnapshot, now: Optional[datetime] = None) -> bool:
    now = _now(now)
    end_date = _utc(snapshot.end_date)
    period_end = _utc(snapshot.current_period_end)
    return (end_date is not None and now > end_date) or (period_end is not None and now > period_end)


# ============================================================================
# STRUCTURED CHECKS
# ============================================================================

def check_access(snapshot: SubscriptionSnapshot, now: Optional[datetime] = None) -> CheckResult:
    """Check that the subscription currently grants access.

    Returns:
        (is_allowed, error_message, error_details)
    """
    now = _now(now)

    if snapshot.status != SubscriptionStatus.ACTIVE.value:
        return False, "Subscription is not active", {
            "error_code": "SUBSCRIPTION_INACTIVE",
            "plan": snapshot.plan,
            "status": snapshot.status,
        }

    end_date = _utc(snapshot.end_date)
    if end_date is not None and now > end_date:
        return False, "Subscription has expired", {
            "error_code": "SUBSCRIPTION_EXPIRED",
            "plan": snapshot.plan,
            "expired_at": end_date.isoformat(),
        }

    period_end = _utc(snapshot.current_period_end)
    if period_end is not None and now > period_end:
        return False, "Subscription period has expired", {
            "error_code": "SUBSCRIPTION_EXPIRED",
            "plan": snapshot.plan,
            "expired_at": period_end.isoformat(),
        }

    return True, None, None


def check_feature(
    snapshot: SubscriptionSnapshot,
    feature: FeatureFlag,
    catalog: PlanCatalog,
) -> CheckResult:
    """Check a feature flag against the synced feature list."""
    feature = FeatureFlag(feature)
    if has_feature(snapshot, feature):
        return True, None, None

    feature_name = FEATURE_METADATA.get(feature, {}).get("name", feature.value)
    min_plan = catalog.minimum_plan_for_feature(feature)

    details = {
        "error_code": "FEATURE_NOT_AVAILABLE",
        "required_feature": feature.value,
        "plan": snapshot.plan,
        "available_features": list(snapshot.features),
        "upgrade_to": min_plan.id.value if min_plan else None,
    }
    if min_plan:
        return False, f"{feature_name} requires the {min_plan.display_name} plan or higher", details
    return False, f"{feature_name} is not available on your current plan", details


def check_asset_limit(
    snapshot: SubscriptionSnapshot,
    current_asset_count: int,
    catalog: PlanCatalog,
) -> CheckResult:
    """Check whether one more asset may be created."""
    if can_add_asset(snapshot, current_asset_count):
        return True, None, None

    upgrade = catalog.minimum_plan_for_assets(current_asset_count)
    if upgrade is not None and catalog.tier_index(upgrade.id) <= catalog.tier_index(snapshot.plan):
        upgrade = None
    message = f"Asset limit reached ({snapshot.max_assets} assets on the {snapshot.plan} plan)."
    if upgrade:
        message += f" Upgrade to {upgrade.display_name} to add more."
    return False, message, {
        "error_code": "ASSET_LIMIT_REACHED",
        "plan": snapshot.plan,
        "current_assets": current_asset_count,
        "max_assets": snapshot.max_assets,
        "upgrade_to": upgrade.id.value if upgrade else None,
    }


def summarize(
    snapshot: SubscriptionSnapshot,
    asset_count: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Entitlement summary for display."""
    return {
        "plan": snapshot.plan,
        "status": snapshot.status,
        "access_active": is_access_active(snapshot, now),
        "features": {flag.value: has_feature(snapshot, flag) for flag in FeatureFlag},
        "max_assets": snapshot.max_assets,
        "current_assets": asset_count,
        "can_add_asset": can_add_asset(snapshot, asset_count),
        "usage_percentage": usage_percentage(asset_count, snapshot.max_assets),
        "cancel_at_period_end": remaining_grace_warning(snapshot),
        "days_remaining": days_remaining(snapshot, now),
    }
