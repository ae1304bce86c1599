"""
Integration tests for the subscription API and tier-gated dependencies.

Tests cover:
- Bearer authentication
- Current entitlement with tier limits
- Client sync (App Store and Stripe) and the absorbed follow-up webhook
- Checkout and billing portal
- require_tier and the pre-configured feature checks rendered as 402
"""

import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import APIRouter, Depends
from fastapi.testclient import TestClient

from entitlement_core.api.dependencies.entitlements import (
    check_advanced_analytics_entitlement,
    check_integrations_entitlement,
    check_invite_members_entitlement,
    require_tier,
)
from entitlement_core.config.settings import Settings
from entitlement_core.entitlements.models import EntitlementSnapshot, Tier
from entitlement_core.main import create_app
from entitlement_core.tests.helpers.signing import (
    AUTH_SECRET,
    auth_headers,
    make_notification_body,
    make_transaction,
)

pytestmark = pytest.mark.integration

BASE = "/api/v1/subscriptions"


def live_transaction(transaction_id, product_id="swiftlyfeedback.team.yearly", **kwargs):
    purchased = datetime.now(timezone.utc) - timedelta(minutes=2)
    return make_transaction(
        transaction_id,
        product_id=product_id,
        purchase_date=purchased,
        expires_date=purchased + timedelta(days=365),
        **kwargs,
    )


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get(BASE)

        assert response.status_code == 401

    def test_invalid_signature(self, client):
        response = client.get(BASE, headers=auth_headers("acct-1", secret="some-other-secret"))

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_expired_token(self, client):
        response = client.get(BASE, headers=auth_headers("acct-1", expires_in=-3600))

        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_token_without_sub(self, client):
        token = jwt.encode({"exp": int(time.time()) + 60}, AUTH_SECRET, algorithm="HS256")

        response = client.get(BASE, headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_auth_not_configured(self, components, session_factory):
        app = create_app(Settings(env="test"), components=components, session_factory=session_factory)

        with TestClient(app) as client:
            response = client.get(BASE, headers=auth_headers("acct-1"))

        assert response.status_code == 503


class TestGetSubscription:

    def test_new_account_is_free(self, client):
        response = client.get(BASE, headers=auth_headers("acct-new"))

        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "free"
        assert body["status"] == "none"
        assert body["expires_at"] is None
        assert body["source"] is None
        assert body["limits"]["max_projects"] == 1
        assert body["limits"]["max_feedback_per_project"] == 10
        assert body["limits"]["can_invite_members"] is False


class TestClientSync:

    def test_sync_apple_grants_team(self, client, signing_chain):
        receipt = signing_chain.sign(live_transaction("tx-1"))

        response = client.post(f"{BASE}/sync-apple", json={"signed_transaction": receipt}, headers=auth_headers("acct-1"))

        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "team"
        assert body["status"] == "active"
        assert body["product_id"] == "swiftlyfeedback.team.yearly"
        assert body["source"] == "app_store"
        assert body["limits"]["max_projects"] is None

        current = client.get(BASE, headers=auth_headers("acct-1")).json()
        assert current["tier"] == "team"

    def test_follow_up_webhook_is_absorbed(self, client, signing_chain):
        transaction = live_transaction("tx-2")
        client.post(
            f"{BASE}/sync",
            json={"provider_kind": "app_store", "receipt": signing_chain.sign(transaction)},
            headers=auth_headers("acct-2"),
        )

        response = client.post(
            "/api/v1/webhooks/appstore",
            content=make_notification_body(signing_chain, "SUBSCRIBED", subtype="INITIAL_BUY", transaction=transaction),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_revoked_transaction_is_409(self, client, signing_chain):
        receipt = signing_chain.sign(live_transaction("tx-3", revocationDate=int(time.time() * 1000)))

        response = client.post(f"{BASE}/sync-apple", json={"signed_transaction": receipt}, headers=auth_headers("acct-3"))

        assert response.status_code == 409
        assert response.json()["error"] == "disallowed_event_kind"

    def test_receipt_of_another_account_is_409(self, client, signing_chain):
        receipt = signing_chain.sign(live_transaction("tx-4"))
        client.post(f"{BASE}/sync-apple", json={"signed_transaction": receipt}, headers=auth_headers("acct-4"))

        response = client.post(f"{BASE}/sync-apple", json={"signed_transaction": receipt}, headers=auth_headers("acct-5"))

        assert response.status_code == 409
        assert response.json()["error"] == "linking_conflict"

    def test_garbage_receipt_is_400(self, client):
        response = client.post(f"{BASE}/sync-apple", json={"signed_transaction": "garbage"}, headers=auth_headers("acct-6"))

        assert response.status_code == 400
        assert response.json()["error"] == "malformed_payload"

    def test_stripe_checkout_receipt(self, client, stripe_api):
        stripe_api.add_session("cs_test_sync", customer="cus_sync", price_id="price_pro_monthly", account_id="acct-7")

        response = client.post(
            f"{BASE}/sync",
            json={"provider_kind": "stripe", "receipt": "cs_test_sync"},
            headers=auth_headers("acct-7"),
        )

        assert response.status_code == 200
        assert response.json()["tier"] == "pro"
        assert response.json()["source"] == "stripe"

    def test_unknown_provider_kind_is_422(self, client):
        response = client.post(
            f"{BASE}/sync",
            json={"provider_kind": "google_play", "receipt": "x"},
            headers=auth_headers("acct-8"),
        )

        assert response.status_code == 422


class TestCheckoutAndPortal:

    def test_checkout_then_portal(self, client):
        checkout = client.post(f"{BASE}/checkout", json={"product_ref": "price_pro_monthly"}, headers=auth_headers("acct-1"))

        assert checkout.status_code == 200
        assert checkout.json()["checkout_url"].startswith("https://checkout.stripe.test/")

        portal = client.get(f"{BASE}/portal", headers=auth_headers("acct-1"))

        assert portal.status_code == 200
        assert portal.json()["portal_url"] == "https://billing.stripe.test/p/session/test"

    def test_unknown_product_is_400(self, client):
        response = client.post(f"{BASE}/checkout", json={"product_ref": "price_nope"}, headers=auth_headers("acct-2"))

        assert response.status_code == 400
        assert response.json()["error"] == "unknown_product"

    def test_stripe_outage_is_503_retryable(self, client, stripe_api):
        stripe_api.configure_failure(500)

        response = client.post(f"{BASE}/checkout", json={"product_ref": "price_pro_monthly"}, headers=auth_headers("acct-3"))

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_portal_without_customer_is_400(self, client):
        response = client.get(f"{BASE}/portal", headers=auth_headers("acct-4"))

        assert response.status_code == 400
        assert response.json()["error"] == "no_billing_customer"


class TestTierGatedRoutes:

    @pytest.fixture
    def gated_client(self, app):
        router = APIRouter(prefix="/gated")

        @router.get("/integrations")
        def integrations(snapshot: EntitlementSnapshot = Depends(require_tier(Tier.PRO, "Integrations"))):
            return {"tier": snapshot.tier.value}

        @router.get("/webhooks")
        def webhooks(snapshot: EntitlementSnapshot = Depends(check_integrations_entitlement)):
            return {"tier": snapshot.tier.value}

        @router.get("/analytics")
        def analytics(snapshot: EntitlementSnapshot = Depends(check_advanced_analytics_entitlement)):
            return {"tier": snapshot.tier.value}

        @router.get("/invite")
        def invite(snapshot: EntitlementSnapshot = Depends(check_invite_members_entitlement)):
            return {"tier": snapshot.tier.value}

        app.include_router(router)
        with TestClient(app) as client:
            yield client

    def test_free_account_gets_402(self, gated_client):
        response = gated_client.get("/gated/integrations", headers=auth_headers("acct-free"))

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "payment_required"
        assert body["feature"] == "Integrations"
        assert body["current_tier"] == "free"
        assert body["required_tier"] == "pro"

    @pytest.mark.parametrize("path, feature", [
        ("/gated/webhooks", "integrations"),
        ("/gated/analytics", "advanced_analytics"),
    ])
    def test_free_account_denied_pro_features(self, gated_client, path, feature):
        response = gated_client.get(path, headers=auth_headers("acct-free"))

        assert response.status_code == 402
        assert response.json()["feature"] == feature
        assert response.json()["required_tier"] == "pro"

    def test_pro_account_passes_pro_gate_but_not_team_gate(self, gated_client, signing_chain):
        receipt = signing_chain.sign(live_transaction("tx-gate", product_id="swiftlyfeedback.pro.monthly"))
        gated_client.post(f"{BASE}/sync-apple", json={"signed_transaction": receipt}, headers=auth_headers("acct-pro"))

        allowed = gated_client.get("/gated/integrations", headers=auth_headers("acct-pro"))
        features = [gated_client.get(path, headers=auth_headers("acct-pro")) for path in ("/gated/webhooks", "/gated/analytics")]
        denied = gated_client.get("/gated/invite", headers=auth_headers("acct-pro"))

        assert allowed.status_code == 200
        assert allowed.json() == {"tier": "pro"}
        assert [r.status_code for r in features] == [200, 200]
        assert denied.status_code == 402
        assert denied.json()["required_tier"] == "team"


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["env"] == "test"
