"""Organization Service

Loads and creates organizations and counts their inventory. The subscription
snapshot inside an organization is only ever written through
services.subscription_sync.persist_snapshot().
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from database import database
from models import Organization, AuditAction, default_free_snapshot
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class OrganizationService:
    """Service for organization lookups and usage counts."""

    def __init__(self, db=None):
        self.db = db

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    # =========================================================================
    # Organization CRUD
    # =========================================================================

    async def create_organization(
        self,
        name: str,
        domain: Optional[str] = None,
        billing_email: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create an organization on the free plan with a 30-day trial window."""
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        org = Organization(
            name=name,
            domain=domain,
            billing_email=billing_email,
            subscription=default_free_snapshot(now),
            created_at=now,
            updated_at=now,
        )
        doc = org.model_dump()
        await db.organizations.insert_one(doc)
        doc.pop("_id", None)

        await create_audit_log(
            action=AuditAction.ORGANIZATION_CREATED,
            actor_id=actor_id,
            organization_id=org.organization_id,
            resource_type="organization",
            resource_id=org.organization_id,
            metadata={"name": name, "domain": domain},
            db=db,
        )
        logger.info(f"Organization created: {org.organization_id} ({name})")
        return doc

    async def get_organization(self, organization_id: str) -> Optional[Dict[str, Any]]:
        if not organization_id:
            return None
        return await self._get_db().organizations.find_one(
            {"organization_id": organization_id},
            {"_id": 0}
        )

    async def update_settings(
        self,
        organization_id: str,
        updates: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Set the given settings fields and return the organization's settings, or None if it is missing."""
        db = self._get_db()
        changes = {f"settings.{key}": value for key, value in updates.items()}
        changes["updated_at"] = datetime.now(timezone.utc)

        before = await db.organizations.find_one_and_update(
            {"organization_id": organization_id},
            {"$set": changes},
            {"_id": 0, "settings": 1},
        )
        if before is None:
            return None

        before_settings = before.get("settings") or {}
        settings = {**before_settings, **updates}
        await create_audit_log(
            action=AuditAction.ORGANIZATION_SETTINGS_UPDATED,
            actor_id=actor_id,
            organization_id=organization_id,
            resource_type="organization",
            resource_id=organization_id,
            before_state=before_settings,
            after_state=settings,
            db=db,
        )
        logger.info(f"Organization settings updated: {organization_id} {sorted(updates)}")
        return settings

    async def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._get_db().organizations.find_one({"name": name}, {"_id": 0})

    async def find_by_subscription_ref(self, subscription_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not subscription_id:
            return None
        return await self._get_db().organizations.find_one(
            {"subscription.stripe_subscription_id": subscription_id},
            {"_id": 0}
        )

    async def find_by_customer_ref(self, customer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not customer_id:
            return None
        return await self._get_db().organizations.find_one(
            {"subscription.stripe_customer_id": customer_id},
            {"_id": 0}
        )

    # =========================================================================
    # Usage Counts
    # =========================================================================

    async def count_assets(self, organization_id: str) -> int:
        """Assets counted against max_assets (hardware records)."""
        return await self._get_db().hardware.count_documents({"organization_id": organization_id})

    async def get_counts(self, organization_id: str, *collections: str) -> Dict[str, int]:
        """Document counts per collection for one organization, fetched concurrently."""
        db = self._get_db()
        query = {"organization_id": organization_id}
        counts = await asyncio.gather(*(db[name].count_documents(query) for name in collections))
        return dict(zip(collections, counts))

    async def assign_orphaned_records(self, organization_id: str, *collections: str) -> Dict[str, int]:
        """Attach records that have no organization_id to the given organization."""
        db = self._get_db()
        updated = {}
        for name in collections:
            result = await db[name].update_many(
                {"organization_id": {"$exists": False}},
                {"$set": {"organization_id": organization_id}}
            )
            updated[name] = result.modified_count
            if result.modified_count:
                logger.info(f"Assigned {result.modified_count} {name} records to {organization_id}")
        return updated
