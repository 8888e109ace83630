"""Organization Routes - The caller's organization, its usage and subscription window.

Endpoints:
- GET /api/organization/details - Organization with user/asset counts
- GET /api/organization/stats - Inventory counts and usage percentage
- GET /api/organization/subscription - Snapshot with days remaining / expiry
- PUT /api/organization/settings - Update timezone, currency or language (admin)
"""
from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel, ConfigDict
from typing import Dict, Any, Optional
import logging

from middleware import organization_route_guard, require_admin
from services.organization_service import OrganizationService
from services.subscription_sync import snapshot_from_document
from services.entitlements import days_remaining, is_expired, usage_percentage

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/organization", tags=["organization"])


class OrganizationSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timezone: Optional[str] = None
    currency: Optional[str] = None
    language: Optional[str] = None


def get_organization_service() -> OrganizationService:
    return OrganizationService()


@router.get("/details")
async def get_organization_details(
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: OrganizationService = Depends(get_organization_service),
):
    try:
        counts = await service.get_counts(organization["organization_id"], "users", "hardware")
    except Exception as e:
        logger.error(f"Failed to get organization details: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get organization details"
        )

    snapshot = snapshot_from_document(organization)
    return {
        "organization_id": organization["organization_id"],
        "name": organization.get("name"),
        "domain": organization.get("domain"),
        "subscription": snapshot.model_dump(exclude={"version"}),
        "settings": organization.get("settings"),
        "stats": {
            "user_count": counts["users"],
            "asset_count": counts["hardware"],
            "max_assets": snapshot.max_assets,
        },
        "created_at": organization.get("created_at"),
    }


@router.get("/stats")
async def get_organization_stats(
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: OrganizationService = Depends(get_organization_service),
):
    try:
        counts = await service.get_counts(
            organization["organization_id"], "users", "hardware", "software", "telemetry", "tickets"
        )
    except Exception as e:
        logger.error(f"Failed to get organization stats: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get organization statistics"
        )

    max_assets = snapshot_from_document(organization).max_assets
    return {
        "users": counts["users"],
        "assets": counts["hardware"],
        "software": counts["software"],
        "telemetry": counts["telemetry"],
        "tickets": counts["tickets"],
        "max_assets": max_assets,
        "usage_percentage": usage_percentage(counts["hardware"], max_assets),
    }


@router.get("/subscription")
async def get_organization_subscription(
    organization: Dict[str, Any] = Depends(organization_route_guard),
):
    snapshot = snapshot_from_document(organization)
    return {
        "subscription": snapshot.model_dump(exclude={"version"}),
        "days_remaining": days_remaining(snapshot),
        "is_expired": is_expired(snapshot),
    }


@router.put("/settings")
async def update_organization_settings(
    body: OrganizationSettingsUpdate,
    user: Dict[str, Any] = Depends(require_admin),
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: OrganizationService = Depends(get_organization_service),
):
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No settings to update"
        )

    try:
        settings = await service.update_settings(
            organization["organization_id"], updates, actor_id=user.get("user_id")
        )
    except Exception as e:
        logger.error(f"Failed to update organization settings: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update organization settings"
        )

    if settings is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found"
        )
    return {"success": True, "settings": settings}
