"""
Subscription API routes.

All routes require a bearer token; the account id always comes from the
verified token.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from entitlement_core.api.dependencies.components import (
    get_checkout_service,
    get_client_sync_handler,
)
from entitlement_core.api.dependencies.entitlements import get_current_entitlement
from entitlement_core.entitlements.access_gate import limits_for
from entitlement_core.entitlements.models import EntitlementSnapshot, ProviderKind
from entitlement_core.platform.account_context import AccountContext, get_account_context
from entitlement_core.services.checkout_service import CheckoutService
from entitlement_core.services.client_sync import ClientSyncHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


# Request/Response models
class TierLimitsResponse(BaseModel):
    """Limits of the current tier. null means unlimited."""
    max_projects: Optional[int]
    max_feedback_per_project: Optional[int]
    can_invite_members: bool
    has_integrations: bool
    has_advanced_analytics: bool
    has_configurable_statuses: bool


class SubscriptionResponse(BaseModel):
    """Current entitlement of the authenticated account."""
    tier: str
    status: str
    product_id: Optional[str] = None
    expires_at: Optional[str] = None
    source: Optional[str] = None
    limits: TierLimitsResponse


class SyncRequest(BaseModel):
    """Client-submitted purchase receipt."""
    provider_kind: ProviderKind = Field(..., description="app_store or stripe")
    receipt: str = Field(..., min_length=1, description="Signed transaction or checkout session id")


class SyncAppleRequest(BaseModel):
    """StoreKit 2 signed transaction."""
    signed_transaction: str = Field(..., min_length=1)


class CreateCheckoutRequest(BaseModel):
    """Request to create a checkout URL."""
    product_ref: str = Field(..., description="Stripe price id")
    success_url: Optional[str] = Field(None, description="Redirect after payment")
    cancel_url: Optional[str] = Field(None, description="Redirect when checkout is abandoned")


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    checkout_url: str


class PortalResponse(BaseModel):
    """Response with billing portal URL."""
    portal_url: str


def to_subscription_response(snapshot: EntitlementSnapshot) -> SubscriptionResponse:
    return SubscriptionResponse(
        **snapshot.to_dict(),
        limits=TierLimitsResponse(**limits_for(snapshot.tier).to_dict()),
    )


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(snapshot: EntitlementSnapshot = Depends(get_current_entitlement)):
    """Get the authenticated account's entitlement."""
    return to_subscription_response(snapshot)


@router.post("/sync", response_model=SubscriptionResponse)
async def sync_purchase(
    body: SyncRequest,
    account: AccountContext = Depends(get_account_context),
    handler: ClientSyncHandler = Depends(get_client_sync_handler),
):
    """
    Reconcile a purchase the client has just completed.

    400 when the receipt fails verification, 409 when it is not a live
    purchase or belongs to another account.
    """
    snapshot = await handler.sync(account.account_id, body.provider_kind, body.receipt)
    return to_subscription_response(snapshot)


@router.post("/sync-apple", response_model=SubscriptionResponse)
async def sync_apple_purchase(
    body: SyncAppleRequest,
    account: AccountContext = Depends(get_account_context),
    handler: ClientSyncHandler = Depends(get_client_sync_handler),
):
    """Reconcile a StoreKit 2 transaction. Same semantics as /sync."""
    snapshot = await handler.sync(account.account_id, ProviderKind.APP_STORE, body.signed_transaction)
    return to_subscription_response(snapshot)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CreateCheckoutRequest,
    account: AccountContext = Depends(get_account_context),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Create a Stripe checkout session for a configured price."""
    url = await service.create_checkout(
        account.account_id,
        body.product_ref,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse(checkout_url=url)


@router.get("/portal", response_model=PortalResponse)
async def get_portal(
    return_url: Optional[str] = Query(None),
    account: AccountContext = Depends(get_account_context),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Create a Stripe billing portal session."""
    url = await service.create_portal(account.account_id, return_url=return_url)
    return PortalResponse(portal_url=url)
