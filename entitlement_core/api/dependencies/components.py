"""
Application components.

Verifiers, normalizer, reconciler, tier resolver, key cache and the Stripe
client factory are stateless or internally synchronized, so one set is
built per application in create_app() and stored on app.state. Request
handlers reach them through the dependencies below; tests build their own
components and override nothing global.
"""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from entitlement_core.config.settings import Settings
from entitlement_core.database.session import get_db_session
from entitlement_core.entitlements.models import ProviderKind
from entitlement_core.entitlements.normalizer import EventNormalizer
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.entitlements.tiers import TierResolver
from entitlement_core.integrations.stripe.billing_client import StripeBillingClient
from entitlement_core.services.billing_webhook_handler import BillingWebhookHandler
from entitlement_core.services.checkout_service import CheckoutService
from entitlement_core.services.client_sync import ClientSyncHandler
from entitlement_core.verification.app_store_verifier import (
    AppStoreNotificationVerifier,
    AppStoreReceiptVerifier,
)
from entitlement_core.verification.base import ReceiptVerifier
from entitlement_core.verification.signing_keys import SigningKeyCache
from entitlement_core.verification.stripe_verifier import (
    StripeCheckoutReceiptVerifier,
    StripeWebhookVerifier,
)

logger = logging.getLogger(__name__)


@dataclass
class AppComponents:
    """Everything a request handler needs besides the db session."""
    settings: Settings
    tier_resolver: TierResolver
    normalizer: EventNormalizer
    reconciler: EntitlementReconciler
    app_store_verifier: AppStoreNotificationVerifier
    stripe_verifier: StripeWebhookVerifier
    stripe_client_factory: Optional[Callable[[], StripeBillingClient]] = None
    receipt_verifiers: Dict[ProviderKind, ReceiptVerifier] = field(default_factory=dict)


def build_components(
    settings: Settings,
    tier_resolver: Optional[TierResolver] = None,
    app_store_verifier: Optional[AppStoreNotificationVerifier] = None,
    stripe_client_factory: Optional[Callable[[], StripeBillingClient]] = None,
) -> AppComponents:
    """
    Build the component graph from settings.

    The optional arguments replace the settings-derived defaults; tests pass
    verifiers anchored to their own certificates and a Stripe client with a
    mock transport.
    """
    tier_resolver = tier_resolver or TierResolver.from_settings(settings)

    if app_store_verifier is None:
        key_cache = None
        if settings.app_store_jwks_url:
            key_cache = SigningKeyCache(
                settings.app_store_jwks_url,
                ttl_seconds=settings.app_store_key_cache_ttl_seconds,
            )
        app_store_verifier = AppStoreNotificationVerifier(
            root_certificates=settings.load_root_certificates(),
            key_cache=key_cache,
            bundle_id=settings.app_store_bundle_id,
            algorithms=settings.app_store_algorithms,
        )

    if stripe_client_factory is None and settings.stripe_secret_key:
        stripe_client_factory = partial(
            StripeBillingClient,
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
        )

    receipt_verifiers: Dict[ProviderKind, ReceiptVerifier] = {
        ProviderKind.APP_STORE: AppStoreReceiptVerifier(app_store_verifier),
    }
    if stripe_client_factory is not None:
        receipt_verifiers[ProviderKind.STRIPE] = StripeCheckoutReceiptVerifier(stripe_client_factory)
    else:
        logger.warning("STRIPE_SECRET_KEY not set; Stripe checkout and sync disabled")

    return AppComponents(
        settings=settings,
        tier_resolver=tier_resolver,
        normalizer=EventNormalizer(),
        reconciler=EntitlementReconciler(tier_resolver),
        app_store_verifier=app_store_verifier,
        stripe_verifier=StripeWebhookVerifier(
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        ),
        stripe_client_factory=stripe_client_factory,
        receipt_verifiers=receipt_verifiers,
    )


def get_components(request: Request) -> AppComponents:
    return request.app.state.components


def get_app_store_webhook_handler(
    components: AppComponents = Depends(get_components),
    db_session: Session = Depends(get_db_session),
) -> BillingWebhookHandler:
    return BillingWebhookHandler(
        db_session,
        components.app_store_verifier,
        components.normalizer,
        components.reconciler,
    )


def get_stripe_webhook_handler(
    components: AppComponents = Depends(get_components),
    db_session: Session = Depends(get_db_session),
) -> BillingWebhookHandler:
    return BillingWebhookHandler(
        db_session,
        components.stripe_verifier,
        components.normalizer,
        components.reconciler,
    )


def get_client_sync_handler(
    components: AppComponents = Depends(get_components),
    db_session: Session = Depends(get_db_session),
) -> ClientSyncHandler:
    return ClientSyncHandler(
        db_session,
        components.receipt_verifiers,
        components.normalizer,
        components.reconciler,
    )


def get_checkout_service(
    components: AppComponents = Depends(get_components),
    db_session: Session = Depends(get_db_session),
) -> CheckoutService:
    return CheckoutService(
        db_session,
        components.stripe_client_factory,
        components.tier_resolver,
        components.settings.web_app_url,
    )
