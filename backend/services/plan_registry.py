"""Plan Catalog - Single Source of Truth for plan definitions.

This is the AUTHORITATIVE source for:
- Plan ids and tier ordering
- Asset limits
- Monthly pricing
- Feature entitlements
- Stripe price ID mappings (plan -> price and price -> plan)

RULES:
1. Tiers are ordered free < basic < professional < enterprise
2. max_assets strictly increases and features only grow along that order
3. Unknown plan ids and unknown price ids resolve to the free tier
4. The catalog is an immutable value; price IDs are supplied when it is built

Plan Structure:
- free: 10 assets, $0/mo
- basic: 100 assets, $29/mo
- professional: 500 assets, $99/mo
- enterprise: 2000 assets, $299/mo
"""
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
from pydantic import BaseModel, ConfigDict
from models import PlanId, FeatureFlag
import os
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN ORDER - Lowest to highest tier
# ============================================================================
PLAN_ORDER = (
    PlanId.FREE,
    PlanId.BASIC,
    PlanId.PROFESSIONAL,
    PlanId.ENTERPRISE,
)


# ============================================================================
# PLAN DEFINITIONS - Everything except the Stripe price reference
# ============================================================================
PLAN_DEFINITIONS = {
    PlanId.FREE: {
        "display_name": "Free",
        "description": "Basic asset scanning for small teams",
        "monthly_price": 0,
        "max_assets": 10,
        "features": frozenset({
            FeatureFlag.BASIC_SCANNING,
        }),
        "is_popular": False,
    },
    PlanId.BASIC: {
        "display_name": "Basic",
        "description": "Analytics for growing IT inventories",
        "monthly_price": 29,
        "max_assets": 100,
        "features": frozenset({
            FeatureFlag.BASIC_SCANNING,
            FeatureFlag.ADVANCED_ANALYTICS,
        }),
        "is_popular": False,
    },
    PlanId.PROFESSIONAL: {
        "display_name": "Professional",
        "description": "API access and priority support for IT departments",
        "monthly_price": 99,
        "max_assets": 500,
        "features": frozenset({
            FeatureFlag.BASIC_SCANNING,
            FeatureFlag.ADVANCED_ANALYTICS,
            FeatureFlag.API_ACCESS,
            FeatureFlag.PRIORITY_SUPPORT,
        }),
        "is_popular": True,
    },
    PlanId.ENTERPRISE: {
        "display_name": "Enterprise",
        "description": "Custom branding for large estates",
        "monthly_price": 299,
        "max_assets": 2000,
        "features": frozenset({
            FeatureFlag.BASIC_SCANNING,
            FeatureFlag.ADVANCED_ANALYTICS,
            FeatureFlag.API_ACCESS,
            FeatureFlag.PRIORITY_SUPPORT,
            FeatureFlag.CUSTOM_BRANDING,
        }),
        "is_popular": False,
    },
}

# Env var holding the Stripe recurring price for each paid plan
PRICE_ENV_VARS = {
    PlanId.BASIC: "STRIPE_BASIC_PRICE_ID",
    PlanId.PROFESSIONAL: "STRIPE_PROFESSIONAL_PRICE_ID",
    PlanId.ENTERPRISE: "STRIPE_ENTERPRISE_PRICE_ID",
}


# ============================================================================
# FEATURE METADATA - Human-readable feature info
# ============================================================================
FEATURE_METADATA = {
    FeatureFlag.BASIC_SCANNING: {
        "name": "Basic Scanning",
        "description": "Discover hardware and software on your network",
    },
    FeatureFlag.ADVANCED_ANALYTICS: {
        "name": "Advanced Analytics",
        "description": "Usage trends, lifecycle and cost reports",
    },
    FeatureFlag.API_ACCESS: {
        "name": "API Access",
        "description": "Programmatic access to your asset inventory",
    },
    FeatureFlag.PRIORITY_SUPPORT: {
        "name": "Priority Support",
        "description": "Faster response times from the support team",
    },
    FeatureFlag.CUSTOM_BRANDING: {
        "name": "Custom Branding",
        "description": "Your logo and colours across the portal",
    },
}


class PlanDefinition(BaseModel):
    """One immutable catalog entry."""
    model_config = ConfigDict(frozen=True)

    id: PlanId
    display_name: str
    description: str = ""
    monthly_price: int
    max_assets: int
    features: FrozenSet[FeatureFlag]
    external_price_ref: Optional[str] = None
    is_popular: bool = False

    @property
    def is_purchasable(self) -> bool:
        return bool(self.external_price_ref)

    def feature_list(self) -> List[str]:
        """Features as plain strings in a stable order."""
        return [flag.value for flag in FeatureFlag if flag in self.features]

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "name": self.display_name,
            "description": self.description,
            "price": self.monthly_price,
            "max_assets": self.max_assets,
            "features": self.feature_list(),
            "stripe_price_id": self.external_price_ref,
            "is_popular": self.is_popular,
        }


# ============================================================================
# PLAN CATALOG
# ============================================================================
class PlanCatalog:
    """Immutable lookup over plan definitions."""

    def __init__(self, plans: Iterable[PlanDefinition]):
        by_id = {plan.id: plan for plan in plans}
        if PlanId.FREE not in by_id:
            raise ValueError("Plan catalog must define the free plan")

        ordered = [by_id[plan_id] for plan_id in PLAN_ORDER if plan_id in by_id]
        for lower, higher in zip(ordered, ordered[1:]):
            if higher.max_assets <= lower.max_assets:
                raise ValueError(f"max_assets must increase from {lower.id.value} to {higher.id.value}")
            if not lower.features <= higher.features:
                raise ValueError(f"{higher.id.value} must include every feature of {lower.id.value}")

        self._plans = MappingProxyType(by_id)
        self._ordered = tuple(ordered)
        self._price_to_plan = MappingProxyType({
            plan.external_price_ref: plan.id
            for plan in ordered
            if plan.external_price_ref
        })

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def resolve_plan_id(self, plan_id: Any) -> PlanId:
        """Resolve any input to a catalog plan id; unrecognized ids resolve to free."""
        try:
            resolved = PlanId(plan_id)
        except ValueError:
            return PlanId.FREE
        return resolved if resolved in self._plans else PlanId.FREE

    def is_known_plan(self, plan_id: Any) -> bool:
        try:
            return PlanId(plan_id) in self._plans
        except ValueError:
            return False

    def get_plan(self, plan_id: Any) -> PlanDefinition:
        """Get a plan definition. Never raises: unknown ids get the free plan."""
        return self._plans[self.resolve_plan_id(plan_id)]

    def ordered_plans(self) -> List[PlanDefinition]:
        return list(self._ordered)

    def get_all_plans(self) -> List[Dict[str, Any]]:
        """Get all plans for display, lowest tier first."""
        return [plan.to_public_dict() for plan in self._ordered]

    def tier_index(self, plan_id: Any) -> int:
        return self._ordered.index(self.get_plan(plan_id))

    # -------------------------------------------------------------------------
    # Upgrade Targets
    # -------------------------------------------------------------------------

    def minimum_plan_for_feature(self, feature: FeatureFlag) -> Optional[PlanDefinition]:
        """Lowest tier that includes the feature."""
        for plan in self._ordered:
            if feature in plan.features:
                return plan
        return None

    def minimum_plan_for_assets(self, asset_count: int) -> Optional[PlanDefinition]:
        """Lowest tier that still has room for one more asset beyond asset_count."""
        for plan in self._ordered:
            if plan.max_assets > asset_count:
                return plan
        return None

    # -------------------------------------------------------------------------
    # Stripe Price ID Mappings
    # -------------------------------------------------------------------------

    def plan_for_price(self, price_id: Optional[str]) -> PlanId:
        """Derive the plan from a Stripe recurring price id.

        Unknown or missing price ids map to the free plan.
        """
        if self.is_known_price(price_id):
            return self._price_to_plan[price_id]
        if price_id:
            logger.warning(f"Unrecognized Stripe price id {price_id}; treating as free plan")
        return PlanId.FREE

    def is_known_price(self, price_id: Optional[str]) -> bool:
        return bool(price_id) and price_id in self._price_to_plan

    def price_refs(self) -> Dict[str, Optional[str]]:
        return {plan.id.value: plan.external_price_ref for plan in self._ordered}


def get_stripe_price_ids_from_env() -> Dict[PlanId, Optional[str]]:
    """Read paid-plan price ids from the environment (blank values count as missing)."""
    return {
        plan_id: (os.environ.get(env_var) or "").strip() or None
        for plan_id, env_var in PRICE_ENV_VARS.items()
    }


def build_plan_catalog(price_refs: Optional[Mapping[Any, Optional[str]]] = None) -> PlanCatalog:
    """Build a catalog from the static plan definitions plus Stripe price ids.

    price_refs maps plan id (enum or string) to price id. When omitted the
    ids are read from the environment.
    """
    if price_refs is None:
        price_refs = get_stripe_price_ids_from_env()
    refs = {PlanId(key): value for key, value in price_refs.items()}

    plans = []
    for plan_id in PLAN_ORDER:
        definition = PLAN_DEFINITIONS[plan_id]
        plans.append(PlanDefinition(
            id=plan_id,
            external_price_ref=None if plan_id == PlanId.FREE else refs.get(plan_id),
            **definition,
        ))
    return PlanCatalog(plans)


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    """Process-wide catalog built from environment config (FastAPI dependency)."""
    catalog = build_plan_catalog()
    missing = [plan_id for plan_id, ref in catalog.price_refs().items() if plan_id != PlanId.FREE.value and not ref]
    if missing:
        logger.warning(f"Stripe price ids missing for plans: {', '.join(missing)}")
    return catalog
