"""Request guards and entitlement gates (FastAPI dependencies).

Guards:
    require_auth              - valid bearer token
    require_admin             - admin role
    organization_route_guard  - caller's organization exists and is active

Gates (build on organization_route_guard):
    require_active_subscription - status active and not expired; sets
                                  X-Subscription-Warning while a cancellation is pending
    require_feature(feature)    - feature flag present in the synced snapshot
    enforce_asset_limit         - room for one more asset (use on asset creation only)

Usage:
    @router.post("/hardware")
    async def create_hardware(organization: dict = Depends(enforce_asset_limit)):
        ...
"""
from fastapi import Depends, Request, Response, HTTPException, status
from typing import Optional, Dict, Any
import logging

from auth import bearer_token, decode_access_token, is_admin
from models import AuditAction, FeatureFlag
from services.organization_service import OrganizationService
from services.plan_registry import PlanCatalog, get_plan_catalog
from services.subscription_sync import snapshot_from_document
from services.entitlements import (
    check_access,
    check_asset_limit,
    check_feature,
    remaining_grace_warning,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SUBSCRIPTION_WARNING_HEADER = "X-Subscription-Warning"

async def get_current_user(request: Request) -> Optional[dict]:
    """Claims from the bearer token, or None."""
    token = bearer_token(request.headers.get("Authorization"))
    return decode_access_token(token) if token else None

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    request.state.user = user
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if not is_admin(user.get("role")):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def organization_route_guard(request: Request) -> Dict[str, Any]:
    """Guard for organization routes - checks auth and loads the caller's organization."""
    user = await require_auth(request)

    organization_id = user.get("organization_id")
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User organization not found"
        )

    organization = await OrganizationService().get_organization(organization_id)
    if not organization:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization not found"
        )

    if not organization.get("is_active", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization is inactive"
        )

    request.state.organization = organization
    return organization

async def _deny(request: Request, organization: Dict[str, Any], message: str, details: Dict[str, Any]):
    user = getattr(request.state, "user", None) or {}
    logger.info(
        f"Entitlement denied org={organization['organization_id']} path={request.url.path} "
        f"code={details.get('error_code')}"
    )
    await create_audit_log(
        action=AuditAction.ENTITLEMENT_DENIED,
        actor_role=user.get("role"),
        actor_id=user.get("user_id"),
        organization_id=organization["organization_id"],
        metadata={"path": str(request.url.path), **details},
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"message": message, **details}
    )

async def require_active_subscription(
    request: Request,
    response: Response,
    organization: Dict[str, Any] = Depends(organization_route_guard),
) -> Dict[str, Any]:
    """Gate: subscription must be active and unexpired."""
    snapshot = snapshot_from_document(organization)
    allowed, message, details = check_access(snapshot)
    if not allowed:
        await _deny(request, organization, message, details)

    if remaining_grace_warning(snapshot):
        response.headers[SUBSCRIPTION_WARNING_HEADER] = "Subscription will be cancelled at the end of the current period"
    return organization

def require_feature(feature: FeatureFlag):
    """
    Build a dependency that enforces a plan feature.

    Usage:
        @router.get("/analytics", dependencies=[Depends(require_feature(FeatureFlag.ADVANCED_ANALYTICS))])
    """
    feature = FeatureFlag(feature)

    async def feature_gate(
        request: Request,
        organization: Dict[str, Any] = Depends(require_active_subscription),
        catalog: PlanCatalog = Depends(get_plan_catalog),
    ) -> Dict[str, Any]:
        snapshot = snapshot_from_document(organization)
        allowed, message, details = check_feature(snapshot, feature, catalog)
        if not allowed:
            await _deny(request, organization, message, details)
        return organization

    return feature_gate

async def enforce_asset_limit(
    request: Request,
    organization: Dict[str, Any] = Depends(require_active_subscription),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> Dict[str, Any]:
    """Gate for asset creation: the organization must have room for one more asset."""
    snapshot = snapshot_from_document(organization)
    asset_count = await OrganizationService().count_assets(organization["organization_id"])
    allowed, message, details = check_asset_limit(snapshot, asset_count, catalog)
    if not allowed:
        await _deny(request, organization, message, details)
    return organization
