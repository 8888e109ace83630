"""
Stripe Product Setup Script

Creates a Stripe product and a monthly recurring price for every paid plan in
the plan catalog, then prints the STRIPE_<PLAN>_PRICE_ID lines for .env.

Prices carry a lookup key (itam_<plan>_monthly), so re-running the script
reuses what already exists instead of creating duplicates.

Usage (from backend/):
    python -m scripts.setup_stripe_products [--dry-run]

Environment:
    STRIPE_SECRET_KEY - Required
"""
import os
import sys
import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

import stripe

from models import PlanId
from services.plan_registry import PLAN_DEFINITIONS, PLAN_ORDER, PRICE_ENV_VARS
from services.stripe_service import to_plain

logger = logging.getLogger(__name__)

CURRENCY = "usd"


def lookup_key(plan_id: PlanId) -> str:
    return f"itam_{plan_id.value}_monthly"


def paid_plans() -> List[PlanId]:
    return [plan_id for plan_id in PLAN_ORDER if PLAN_DEFINITIONS[plan_id]["monthly_price"] > 0]


class StripeProductSetup:
    """Creates the products and prices backing the paid plans."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.price_ids: Dict[PlanId, str] = {}
        self.created: List[str] = []
        self.errors: List[Dict[str, str]] = []

    def setup_all_plans(self) -> Dict[str, Any]:
        logger.info(f"Starting Stripe product setup (dry_run={self.dry_run})")
        if not stripe.api_key:
            raise ValueError("STRIPE_SECRET_KEY not set")

        for plan_id in paid_plans():
            try:
                self.price_ids[plan_id] = self._setup_plan(plan_id)
            except stripe.StripeError as e:
                logger.error(f"Failed to set up {plan_id.value}: {e}")
                self.errors.append({"plan": plan_id.value, "error": str(e)})

        logger.info(f"Prices ready: {len(self.price_ids)}, created: {len(self.created)}, errors: {len(self.errors)}")
        return {
            "price_ids": {plan_id.value: price_id for plan_id, price_id in self.price_ids.items()},
            "created": self.created,
            "errors": self.errors,
        }

    def _setup_plan(self, plan_id: PlanId) -> str:
        key = lookup_key(plan_id)
        existing = self._find_existing_price(key)
        if existing:
            logger.info(f"Price exists for {plan_id.value}: {existing['id']}")
            return existing["id"]

        definition = PLAN_DEFINITIONS[plan_id]
        metadata = {
            "plan": plan_id.value,
            "max_assets": str(definition["max_assets"]),
            "features": ",".join(sorted(feature.value for feature in definition["features"])),
        }

        if self.dry_run:
            logger.info(f"[DRY RUN] Would create {key} = ${definition['monthly_price']}/month")
            return f"price_dryrun_{plan_id.value}"

        product = to_plain(stripe.Product.create(
            name=f"ITAM {definition['display_name']} Plan",
            description=definition["description"],
            metadata=metadata,
        ))
        price = to_plain(stripe.Price.create(
            product=product["id"],
            unit_amount=definition["monthly_price"] * 100,
            currency=CURRENCY,
            recurring={"interval": "month"},
            lookup_key=key,
            metadata=metadata,
        ))
        logger.info(f"Created {plan_id.value}: product={product['id']} price={price['id']}")
        self.created.append(price["id"])
        return price["id"]

    def _find_existing_price(self, key: str) -> Optional[Dict[str, Any]]:
        prices = to_plain(stripe.Price.list(lookup_keys=[key], active=True, limit=1)).get("data", [])
        return prices[0] if prices else None

    def env_lines(self) -> List[str]:
        return [f"{PRICE_ENV_VARS[plan_id]}={price_id}" for plan_id, price_id in self.price_ids.items()]


def main():
    parser = argparse.ArgumentParser(description="Create Stripe products and prices for the paid plans")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be created without calling create")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

    setup = StripeProductSetup(dry_run=args.dry_run)
    result = setup.setup_all_plans()

    print("\nAdd these to your .env file:")
    for line in setup.env_lines():
        print(line)
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
