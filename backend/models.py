from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone, timedelta
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanId(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"

class FeatureFlag(str, Enum):
    BASIC_SCANNING = "basic_scanning"
    ADVANCED_ANALYTICS = "advanced_analytics"
    API_ACCESS = "api_access"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_BRANDING = "custom_branding"

class UserRole(str, Enum):
    ROLE_USER = "user"
    ROLE_ADMIN = "admin"

class StripeEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class AuditAction(str, Enum):
    # Organization
    ORGANIZATION_CREATED = "ORGANIZATION_CREATED"
    ORGANIZATION_SETTINGS_UPDATED = "ORGANIZATION_SETTINGS_UPDATED"

    # Subscription intents
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    CHECKOUT_CONFIRMED = "CHECKOUT_CONFIRMED"
    PLAN_CHANGED = "PLAN_CHANGED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    BILLING_PORTAL_OPENED = "BILLING_PORTAL_OPENED"

    # Provider events
    SUBSCRIPTION_SYNCED = "SUBSCRIPTION_SYNCED"
    SUBSCRIPTION_DELETED = "SUBSCRIPTION_DELETED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

    # Gating
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"


# Trial window granted to newly created organizations on the free tier
FREE_TRIAL_DAYS = 30


# ============================================================================
# ORGANIZATION + SUBSCRIPTION SNAPSHOT
# ============================================================================

class SubscriptionSnapshot(BaseModel):
    """Locally persisted copy of an organization's subscription state.

    max_assets and features are copied from the plan catalog at the last
    sync; they are the source of truth for entitlement checks.
    """
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    plan: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # Trial window on the free tier; the billing period end once a subscription is synced
    end_date: Optional[datetime] = None
    max_assets: int = 10
    features: List[FeatureFlag] = Field(default_factory=lambda: [FeatureFlag.BASIC_SCANNING.value])

    # Stripe references
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None

    # Billing cycle (set once a Stripe subscription exists)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    # Optimistic concurrency counter, bumped on every persisted change
    version: int = 0


class OrganizationSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timezone: str = "UTC"
    currency: str = "USD"
    language: str = "en"


class Organization(BaseModel):
    model_config = ConfigDict(extra="ignore")

    organization_id: str = Field(default_factory=lambda: f"ORG-{uuid.uuid4().hex[:8].upper()}")
    name: str
    domain: Optional[str] = None
    billing_email: Optional[str] = None
    subscription: SubscriptionSnapshot = Field(default_factory=SubscriptionSnapshot)
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def default_free_snapshot(now: Optional[datetime] = None) -> SubscriptionSnapshot:
    """Snapshot assigned to every new organization: free/active/10 assets, 30-day window."""
    now = now or datetime.now(timezone.utc)
    return SubscriptionSnapshot(
        plan=PlanId.FREE,
        status=SubscriptionStatus.ACTIVE,
        start_date=now,
        end_date=now + timedelta(days=FREE_TRIAL_DAYS),
        max_assets=10,
        features=[FeatureFlag.BASIC_SCANNING],
    )


# ============================================================================
# AUDIT + WEBHOOK BOOKKEEPING
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class StripeEventRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    event_id: str
    type: str
    status: StripeEventStatus = StripeEventStatus.PROCESSING
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # When the current delivery took the event; stale PROCESSING claims may be retaken
    claimed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    related_organization_id: Optional[str] = None
    related_subscription_id: Optional[str] = None
