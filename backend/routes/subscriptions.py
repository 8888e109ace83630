"""Subscription Routes - Plans, plan changes and billing for the caller's organization.

Endpoints:
- GET /api/subscription/plans - Public plan catalog
- GET /api/subscription/details - Local snapshot + Stripe view
- GET /api/subscription/usage - Asset usage against the plan limit
- GET /api/subscription/entitlements - Evaluated entitlements
- POST /api/subscription/checkout - Start hosted checkout for a plan
- POST /api/subscription/change-plan - Checkout (from free) or in-place update
- POST /api/subscription/cancel - Cancel at period end (or immediately)
- POST /api/subscription/reactivate - Undo a pending cancellation
- GET /api/subscription/portal - Stripe billing portal URL
- GET /api/subscription/success - Confirm a completed checkout session
- POST /api/subscription/sync - Admin: re-read subscription from Stripe
"""
from fastapi import APIRouter, HTTPException, Request, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
import os
import logging

from middleware import organization_route_guard, require_admin
from services.subscription_service import SubscriptionService, get_subscription_service
from services.billing_errors import BillingError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class CheckoutRequest(BaseModel):
    """Request to create a checkout session (accepts the web client's camelCase keys)."""
    model_config = ConfigDict(populate_by_name=True)

    plan: str = Field(..., alias="planName")
    success_url: Optional[str] = Field(None, alias="successUrl")
    cancel_url: Optional[str] = Field(None, alias="cancelUrl")


class ChangePlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan: str = Field(..., alias="planName")


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cancel_at_period_end: bool = Field(True, alias="cancelAtPeriodEnd")


def _origin(request: Request) -> str:
    """Base URL of the web client for Stripe redirects."""
    configured = (os.getenv("FRONTEND_URL") or "").strip().rstrip("/")
    if configured:
        return configured
    origin = request.headers.get("origin", "").strip().rstrip("/")
    if origin:
        return origin
    return str(request.base_url).rstrip("/")


def _checkout_urls(request: Request):
    base = _origin(request)
    return (
        f"{base}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/subscription/cancel",
    )


def _actor_id(request: Request) -> Optional[str]:
    user = getattr(request.state, "user", None) or {}
    return user.get("user_id")


def _billing_http_error(e: BillingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


@router.get("/plans")
async def get_plans(service: SubscriptionService = Depends(get_subscription_service)):
    """Public list of plans, lowest tier first."""
    return {"success": True, "plans": service.list_plans()}


@router.get("/details")
async def get_subscription_details(
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        details = await service.get_details(organization)
        return {"success": True, **details}
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Failed to get subscription details: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get subscription details"
        )


@router.get("/usage")
async def get_usage(
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return {"success": True, "usage": await service.get_usage(organization)}
    except Exception as e:
        logger.error(f"Failed to get usage statistics: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get usage statistics"
        )


@router.get("/entitlements")
async def get_entitlements(
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return {"success": True, "entitlements": await service.get_entitlements(organization)}
    except Exception as e:
        logger.error(f"Failed to get entitlements: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get entitlements"
        )


@router.post("/checkout")
async def create_checkout(
    request: Request,
    body: CheckoutRequest,
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a Stripe checkout session for a paid plan."""
    default_success, default_cancel = _checkout_urls(request)
    try:
        intent = await service.start_checkout(
            organization,
            body.plan,
            success_url=body.success_url or default_success,
            cancel_url=body.cancel_url or default_cancel,
            actor_id=_actor_id(request),
        )
        return {"success": True, **intent}
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Checkout creation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session"
        )


@router.post("/change-plan")
async def change_plan(
    request: Request,
    body: ChangePlanRequest,
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Change the organization's plan.

    From free: returns a checkout intent (action="checkout").
    Between paid plans: updates in place with proration (action="updated").
    """
    success_url, cancel_url = _checkout_urls(request)
    try:
        result = await service.change_plan(
            organization,
            body.plan,
            success_url=success_url,
            cancel_url=cancel_url,
            actor_id=_actor_id(request),
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Plan change failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to change plan"
        )

    if result["action"] == "updated":
        return {"success": True, "message": "Plan changed successfully", **result}
    return {"success": True, **result}


@router.post("/cancel")
async def cancel_subscription(
    request: Request,
    body: Optional[CancelRequest] = None,
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    at_period_end = body.cancel_at_period_end if body else True
    try:
        result = await service.cancel(organization, at_period_end=at_period_end, actor_id=_actor_id(request))
        return {"success": True, **result}
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Subscription cancel failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel subscription"
        )


@router.post("/reactivate")
async def reactivate_subscription(
    request: Request,
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        result = await service.reactivate(organization, actor_id=_actor_id(request))
        return {"success": True, **result}
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Subscription reactivation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reactivate subscription"
        )


@router.get("/portal")
async def get_portal_url(
    request: Request,
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Stripe billing portal session for payment methods and invoices."""
    return_url = f"{_origin(request)}/subscription/dashboard"
    try:
        portal = await service.open_portal(organization, return_url, actor_id=_actor_id(request))
        return {"success": True, **portal}
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Billing portal creation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create customer portal session"
        )


@router.get("/success")
async def checkout_success(
    request: Request,
    session_id: Optional[str] = None,
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Confirm a checkout session after Stripe redirects back."""
    if not session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Session ID is required"
        )
    try:
        result = await service.confirm_checkout(organization, session_id, actor_id=_actor_id(request))
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Checkout confirmation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process checkout success"
        )

    message = "Subscription activated successfully" if result["linked"] else "Checkout not completed yet"
    return {"success": True, "message": message, **result}


@router.post("/sync")
async def resync_subscription(
    request: Request,
    admin: Dict[str, Any] = Depends(require_admin),
    organization: Dict[str, Any] = Depends(organization_route_guard),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Admin: overwrite the local snapshot from Stripe (drift repair)."""
    try:
        result = await service.resync(organization, actor_id=admin.get("user_id"))
        return {"success": True, **result}
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Subscription resync failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sync subscription"
        )
