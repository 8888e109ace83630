"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
import stripe
from fastapi import FastAPI
from fastapi.testclient import TestClient

from auth import create_access_token
from database import database
from models import SubscriptionSnapshot, default_free_snapshot
from routes import subscriptions, webhooks, organization
from services.plan_registry import build_plan_catalog, get_plan_catalog
from services.stripe_service import StripeService
from services.stripe_webhook_service import StripeWebhookService, get_stripe_webhook_service
from services.subscription_service import SubscriptionService, get_subscription_service
from services.organization_service import OrganizationService

TEST_PRICE_IDS = {
    "basic": "price_basic_test",
    "professional": "price_professional_test",
    "enterprise": "price_enterprise_test",
}

ORG_ID = "ORG-TEST0001"

_MISSING = object()


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc, path, value):
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _matches(doc, query):
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(_matches(doc, branch) for branch in cond):
                return False
            continue
        value = _get_path(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in":
                    if (None if value is _MISSING else value) not in arg:
                        return False
                elif op == "$exists":
                    if (value is not _MISSING) != bool(arg):
                        return False
                elif op == "$lt":
                    if value is _MISSING or value is None or not value < arg:
                        return False
                else:
                    raise NotImplementedError(op)
        elif (None if value is _MISSING else value) != cond:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        doc = {k: doc[k] for k in included if k in doc}
    if projection.get("_id") == 0:
        doc.pop("_id", None)
    return doc


class InMemoryCollection:
    """Just enough of a Motor collection for the queries this backend issues."""

    def __init__(self, unique_key=None):
        self.docs = []
        self.unique_key = unique_key
        self.find_one = AsyncMock(side_effect=self._find_one)
        self.insert_one = AsyncMock(side_effect=self._insert_one)
        self.update_one = AsyncMock(side_effect=self._update_one)
        self.update_many = AsyncMock(side_effect=self._update_many)
        self.find_one_and_update = AsyncMock(side_effect=self._find_one_and_update)
        self.count_documents = AsyncMock(side_effect=self._count_documents)

    async def _find_one(self, query, projection=None, **kw):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    async def _insert_one(self, doc, **kw):
        if self.unique_key and any(d.get(self.unique_key) == doc.get(self.unique_key) for d in self.docs):
            raise Exception(f"E11000 duplicate key error {self.unique_key}")
        doc.setdefault("_id", f"oid-{len(self.docs) + 1}")
        self.docs.append(copy.deepcopy(doc))
        return MagicMock(inserted_id=doc["_id"])

    def _apply(self, doc, update):
        for key, value in update.get("$set", {}).items():
            _set_path(doc, key, copy.deepcopy(value))

    async def _update_one(self, query, update, **kw):
        for doc in self.docs:
            if _matches(doc, query):
                self._apply(doc, update)
                return MagicMock(matched_count=1, modified_count=1)
        return MagicMock(matched_count=0, modified_count=0)

    async def _find_one_and_update(self, query, update, projection=None, return_document=False, **kw):
        for doc in self.docs:
            if _matches(doc, query):
                before = _project(doc, projection)
                self._apply(doc, update)
                return _project(doc, projection) if return_document else before
        return None

    async def _update_many(self, query, update, **kw):
        matched = [doc for doc in self.docs if _matches(doc, query)]
        for doc in matched:
            self._apply(doc, update)
        return MagicMock(matched_count=len(matched), modified_count=len(matched))

    async def _count_documents(self, query, **kw):
        return sum(1 for doc in self.docs if _matches(doc, query))


class InMemoryDB:
    """Minimal in-memory database: collections are created on first access."""

    def __init__(self):
        self._collections = {
            "organizations": InMemoryCollection(unique_key="organization_id"),
            "stripe_events": InMemoryCollection(unique_key="event_id"),
        }

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = InMemoryCollection()
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def organization(self, organization_id=ORG_ID):
        for doc in self.organizations.docs:
            if doc["organization_id"] == organization_id:
                return doc
        return None

    def snapshot(self, organization_id=ORG_ID) -> SubscriptionSnapshot:
        return SubscriptionSnapshot.model_validate(self.organization(organization_id)["subscription"])

    def add_records(self, collection, count, organization_id=ORG_ID):
        for i in range(count):
            self[collection].docs.append({"_id": f"{collection}-{i}", "organization_id": organization_id})


@pytest.fixture
def db():
    return InMemoryDB()


@pytest.fixture
def catalog():
    return build_plan_catalog(TEST_PRICE_IDS)


@pytest.fixture(autouse=True)
def stripe_api_key(monkeypatch):
    """Stripe calls are always mocked; a key must still look configured."""
    monkeypatch.setattr(stripe, "api_key", "sk_test_dummy")


@pytest.fixture
def seed_org(db, catalog):
    """Insert an organization; plan limits/features come from the catalog unless overridden."""
    def _seed(plan="free", organization_id=ORG_ID, is_active=True, **snapshot_fields):
        plan_def = catalog.get_plan(plan)
        snapshot = default_free_snapshot().model_dump()
        snapshot.update({
            "plan": plan_def.id.value,
            "max_assets": plan_def.max_assets,
            "features": plan_def.feature_list(),
            "stripe_price_id": plan_def.external_price_ref,
        })
        snapshot.update(snapshot_fields)
        doc = {
            "organization_id": organization_id,
            "name": "Acme IT",
            "domain": "acme.example",
            "subscription": snapshot,
            "settings": {"timezone": "UTC", "currency": "USD", "language": "en"},
            "is_active": is_active,
            "created_at": datetime.now(timezone.utc),
            "updated_at": datetime.now(timezone.utc),
        }
        db.organizations.docs.append(copy.deepcopy(doc))
        return doc
    return _seed


@pytest.fixture
def make_remote_subscription():
    """Stripe subscription object shaped like the API response (items.data[0].price)."""
    def _make(price_id, sub_id="sub_123", customer="cus_123", status="active",
              cancel_at_period_end=False, period_days=30, item_id="si_123"):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        end = start + timedelta(days=period_days)
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": int(start.timestamp()),
            "current_period_end": int(end.timestamp()),
            "items": {"data": [{"id": item_id, "price": {"id": price_id}}]},
            "metadata": {},
        }
    return _make


def stripe_object(values, cls=stripe.StripeObject):
    """Build an SDK object the way the stripe client returns it (not a dict on current releases)."""
    return cls.construct_from(copy.deepcopy(values), "sk_test_dummy")


def auth_headers(organization_id=ORG_ID, user_id="user-1", role="user"):
    token = create_access_token({"user_id": user_id, "organization_id": organization_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return auth_headers()


@pytest.fixture
def app(db, catalog):
    """Bare app with the API routers; services are bound to the in-memory db."""
    app = FastAPI()
    app.include_router(subscriptions.router)
    app.include_router(webhooks.router)
    app.include_router(organization.router)

    stripe_service = StripeService(catalog, db=db)
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    app.dependency_overrides[get_subscription_service] = lambda: SubscriptionService(stripe_service, catalog, db=db)
    app.dependency_overrides[get_stripe_webhook_service] = lambda: StripeWebhookService(
        stripe_service, db=db, webhook_secret="whsec_test"
    )
    app.dependency_overrides[organization.get_organization_service] = lambda: OrganizationService(db=db)
    return app


@pytest.fixture
def client(app, db):
    # Request guards construct their own OrganizationService against the global handle
    with patch.object(database, "get_db", return_value=db):
        yield TestClient(app)
