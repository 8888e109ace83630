"""MongoDB access (Motor).

The API holds one client for the process (database.connect / close in the
app lifespan). Scripts open a short-lived one with get_db_context().
"""
import os
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

load_dotenv(Path(__file__).parent / '.env')

logger = logging.getLogger(__name__)

# Collections holding organization-scoped inventory; only counted here
COUNTED_COLLECTIONS = ("users", "hardware", "software", "tickets", "telemetry")

# (collection, keys, options)
INDEXES = [
    ("organizations", "organization_id", {"unique": True}),
    ("organizations", "domain", {"sparse": True}),
    ("organizations", "subscription.status", {}),
    # Webhooks resolve organizations by provider references
    ("organizations", "subscription.stripe_customer_id", {"sparse": True}),
    ("organizations", "subscription.stripe_subscription_id", {"sparse": True}),
    ("stripe_events", "event_id", {"unique": True}),
    ("stripe_events", [("status", ASCENDING), ("created", DESCENDING)], {}),
    ("audit_logs", [("organization_id", ASCENDING), ("timestamp", DESCENDING)], {}),
    ("audit_logs", "action", {}),
] + [(name, "organization_id", {}) for name in COUNTED_COLLECTIONS]


def _settings() -> Tuple[str, str]:
    try:
        return os.environ['MONGO_URL'], os.environ['DB_NAME']
    except KeyError as e:
        raise RuntimeError(f"{e.args[0]} must be set") from e


async def _open(mongo_url: str, db_name: str) -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    # tz_aware so stored period/end dates compare with an aware utc "now"
    client = AsyncIOMotorClient(mongo_url, tz_aware=True)
    db = client[db_name]
    await db.command("ping")
    return client, db


class Database:
    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self):
        mongo_url, db_name = _settings()
        try:
            self.client, self.db = await _open(mongo_url, db_name)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB database {db_name}: {e}")
            raise
        logger.info(f"Connected to MongoDB: {db_name}")
        await self.ensure_indexes()

    async def close(self):
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    def get_db(self) -> Optional[AsyncIOMotorDatabase]:
        return self.db

    async def ensure_indexes(self):
        """Create the indexes in INDEXES; an index that conflicts with an existing one is logged and skipped."""
        created = 0
        for collection, keys, options in INDEXES:
            try:
                await self.db[collection].create_index(keys, **options)
                created += 1
            except Exception as e:
                logger.warning(f"Index {collection}.{keys} not created: {e}")
        logger.info(f"MongoDB indexes verified ({created}/{len(INDEXES)})")


database = Database()


@asynccontextmanager
async def get_db_context():
    """Short-lived connection for scripts.

        async with get_db_context() as db:
            await OrganizationService(db=db).get_organization(...)
    """
    mongo_url, db_name = _settings()
    client, db = await _open(mongo_url, db_name)
    logger.info(f"Script connected to MongoDB: {db_name}")
    try:
        yield db
    finally:
        client.close()
