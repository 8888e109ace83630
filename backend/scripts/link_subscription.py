"""
Link an existing Stripe subscription to an organization and sync its snapshot.

Usage (from backend/):
  python -m scripts.link_subscription --organization-id <org_id> --subscription-id <sub_id>
  python -m scripts.link_subscription --organization-id <org_id> --list   # show active Stripe subscriptions
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import stripe

from database import get_db_context
from services.plan_registry import get_plan_catalog
from services.stripe_service import StripeService, to_plain
from services.organization_service import OrganizationService
from services.subscription_sync import remote_period, remote_price_id


def list_active_subscriptions(limit: int = 10):
    subscriptions = to_plain(stripe.Subscription.list(limit=limit, status="active")).get("data", [])
    catalog = get_plan_catalog()
    for sub in subscriptions:
        start, end = remote_period(sub)
        price_id = remote_price_id(sub)
        print(f"{sub['id']} customer={sub.get('customer')} status={sub.get('status')} "
              f"price={price_id} plan={catalog.plan_for_price(price_id).value} "
              f"period={start.date() if start else '?'}..{end.date() if end else '?'}")
    return subscriptions


async def run(organization_id: str, subscription_id: str = None, list_only: bool = False, db=None) -> bool:
    organization = await OrganizationService(db=db).get_organization(organization_id)
    if not organization:
        print(f"No organization found for organization_id={organization_id}")
        return False
    print(f"Found organization: {organization['name']}")

    if list_only:
        list_active_subscriptions()
        return True
    if not subscription_id:
        print("Provide --subscription-id or --list")
        return False

    service = StripeService(get_plan_catalog(), db=db)
    remote = service.retrieve_subscription(subscription_id, organization_id)
    snapshot = await service.sync_snapshot(organization, remote)
    print(f"Linked {subscription_id} to {organization_id}: plan={snapshot.plan} status={snapshot.status} "
          f"max_assets={snapshot.max_assets} features={','.join(snapshot.features)}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Link a Stripe subscription to an organization")
    parser.add_argument("--organization-id", required=True, help="Organization ID")
    parser.add_argument("--subscription-id", help="Stripe subscription ID (sub_...)")
    parser.add_argument("--list", action="store_true", help="List active Stripe subscriptions instead of linking")
    args = parser.parse_args()

    async def _():
        async with get_db_context() as db:
            return await run(
                organization_id=args.organization_id,
                subscription_id=args.subscription_id,
                list_only=args.list,
                db=db,
            )

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
