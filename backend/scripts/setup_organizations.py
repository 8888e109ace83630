"""
Create the default organization and attach orphaned records to it.

Users, hardware, software, telemetry and tickets created before organizations
existed have no organization_id; they are assigned to "Default Organization".
Safe to run repeatedly.

Usage (from backend/):
  python -m scripts.setup_organizations
  python -m scripts.setup_organizations --name "Acme IT" --domain acme.example
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import get_db_context, COUNTED_COLLECTIONS
from services.organization_service import OrganizationService

DEFAULT_ORGANIZATION_NAME = "Default Organization"


async def run(name: str = DEFAULT_ORGANIZATION_NAME, domain: str = "default.local", db=None) -> str:
    service = OrganizationService(db=db)

    existing = await service.find_by_name(name)
    if existing:
        organization_id = existing["organization_id"]
        print(f"{name} already exists: {organization_id}")
    else:
        organization = await service.create_organization(name=name, domain=domain)
        organization_id = organization["organization_id"]
        print(f"{name} created: {organization_id}")

    updated = await service.assign_orphaned_records(organization_id, *COUNTED_COLLECTIONS)
    for collection, count in updated.items():
        if count:
            print(f"Updated {count} {collection} records")

    summary = await service.get_counts(organization_id, "users", "hardware", "software")
    print("\nSummary:")
    for collection, count in summary.items():
        print(f"- {collection.capitalize()}: {count}")
    return organization_id


def main():
    parser = argparse.ArgumentParser(description="Create default organization and back-fill organization_id")
    parser.add_argument("--name", default=DEFAULT_ORGANIZATION_NAME, help="Organization name")
    parser.add_argument("--domain", default="default.local", help="Organization domain")
    args = parser.parse_args()

    async def _():
        async with get_db_context() as db:
            return await run(name=args.name, domain=args.domain, db=db)

    asyncio.run(_())
    return 0


if __name__ == "__main__":
    sys.exit(main())
