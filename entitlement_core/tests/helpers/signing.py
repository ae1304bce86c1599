"""
Signing helpers for provider payload tests.

Builds throwaway EC certificate chains and JWKS documents so tests can
produce App Store payloads that pass (or deliberately fail) real
verification, plus Stripe-Signature headers and bearer tokens.
"""

import base64
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import jwt
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from jwt.algorithms import ECAlgorithm

from entitlement_core.verification.app_store_verifier import (
    APPLE_INTERMEDIATE_MARKER_OID,
    APPLE_LEAF_MARKER_OID,
)
from entitlement_core.verification.stripe_verifier import compute_signature

BUNDLE_ID = "com.swiftlyfeedback.app"
AUTH_SECRET = "test-auth-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def build_certificate(
    common_name: str,
    public_key,
    issuer_name: str,
    issuer_key,
    is_ca: bool,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    marker_oids: Sequence[x509.ObjectIdentifier] = (),
) -> x509.Certificate:
    """Issue a certificate for public_key signed by issuer_key."""
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    for oid in marker_oids:
        # Apple encodes its marker extensions as an ASN.1 NULL
        builder = builder.add_extension(x509.UnrecognizedExtension(oid, b"\x05\x00"), critical=False)
    return builder.sign(issuer_key, hashes.SHA256())


def _der_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


@dataclass
class SigningChain:
    """Root -> intermediate -> leaf chain; the leaf key signs payloads."""
    root_key: Any
    root_cert: x509.Certificate
    intermediate_key: Any
    intermediate_cert: x509.Certificate
    leaf_key: Any
    leaf_cert: x509.Certificate

    @property
    def root_pem(self) -> bytes:
        return self.root_cert.public_bytes(serialization.Encoding.PEM)

    @property
    def x5c(self) -> List[str]:
        return [_der_b64(self.leaf_cert), _der_b64(self.intermediate_cert), _der_b64(self.root_cert)]

    def sign(self, claims: Dict[str, Any], x5c: Optional[List[str]] = None) -> str:
        """Compact ES256 JWS with the chain in the x5c header."""
        return jwt.encode(
            claims,
            self.leaf_key,
            algorithm="ES256",
            headers={"x5c": x5c if x5c is not None else self.x5c},
        )


def build_signing_chain(
    leaf_not_before: Optional[datetime] = None,
    leaf_not_after: Optional[datetime] = None,
    leaf_marker: bool = True,
    intermediate_marker: bool = True,
    intermediate_is_ca: bool = True,
) -> SigningChain:
    """
    Throwaway root -> intermediate -> leaf chain.

    By default the leaf and intermediate carry the App Store marker
    extensions; switch them off to build chains a verifier must reject.
    """
    root_key = generate_ec_key()
    root_cert = build_certificate("Test Root CA", root_key.public_key(), "Test Root CA", root_key, True)
    intermediate_key = generate_ec_key()
    intermediate_cert = build_certificate(
        "Test Intermediate CA",
        intermediate_key.public_key(),
        "Test Root CA",
        root_key,
        intermediate_is_ca,
        marker_oids=[APPLE_INTERMEDIATE_MARKER_OID] if intermediate_marker else [],
    )
    leaf_key = generate_ec_key()
    leaf_cert = build_certificate(
        "Test Signing Leaf",
        leaf_key.public_key(),
        "Test Intermediate CA",
        intermediate_key,
        False,
        not_before=leaf_not_before,
        not_after=leaf_not_after,
        marker_oids=[APPLE_LEAF_MARKER_OID] if leaf_marker else [],
    )
    return SigningChain(root_key, root_cert, intermediate_key, intermediate_cert, leaf_key, leaf_cert)


# =============================================================================
# Key id (JWKS) signing
# =============================================================================

def jwk_for(private_key, kid: str) -> Dict[str, Any]:
    """Public JWK for an EC private key."""
    jwk = ECAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk.update({"kid": kid, "alg": "ES256", "use": "sig"})
    return jwk


def jwks_document(*keys: Dict[str, Any]) -> Dict[str, Any]:
    return {"keys": list(keys)}


def sign_with_kid(claims: Dict[str, Any], private_key, kid: str) -> str:
    return jwt.encode(claims, private_key, algorithm="ES256", headers={"kid": kid})


# =============================================================================
# App Store payload builders
# =============================================================================

def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def make_transaction(
    transaction_id: str,
    original_transaction_id: Optional[str] = None,
    product_id: str = "swiftlyfeedback.pro.monthly",
    purchase_date: Optional[datetime] = None,
    expires_date: Optional[datetime] = None,
    app_account_token: Optional[str] = None,
    bundle_id: str = BUNDLE_ID,
    **extra,
) -> Dict[str, Any]:
    """Decoded StoreKit 2 transaction claims."""
    purchase_date = purchase_date or datetime.now(timezone.utc)
    expires_date = expires_date or purchase_date + timedelta(days=30)
    transaction = {
        "transactionId": transaction_id,
        "originalTransactionId": original_transaction_id or transaction_id,
        "bundleId": bundle_id,
        "productId": product_id,
        "purchaseDate": to_millis(purchase_date),
        "expiresDate": to_millis(expires_date),
        "signedDate": to_millis(purchase_date),
        "type": "Auto-Renewable Subscription",
        "environment": "Sandbox",
    }
    if app_account_token:
        transaction["appAccountToken"] = app_account_token
    transaction.update(extra)
    return transaction


def make_notification_claims(
    chain: SigningChain,
    notification_type: str,
    subtype: Optional[str] = None,
    transaction: Optional[Dict[str, Any]] = None,
    renewal_info: Optional[Dict[str, Any]] = None,
    notification_uuid: Optional[str] = None,
    signed_date: Optional[datetime] = None,
    bundle_id: str = BUNDLE_ID,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {"bundleId": bundle_id, "environment": "Sandbox"}
    if transaction is not None:
        data["signedTransactionInfo"] = chain.sign(transaction)
    if renewal_info is not None:
        data["signedRenewalInfo"] = chain.sign(renewal_info)

    claims = {
        "notificationType": notification_type,
        "notificationUUID": notification_uuid or str(uuid.uuid4()),
        "version": "2.0",
        "signedDate": to_millis(signed_date or datetime.now(timezone.utc)),
        "data": data,
    }
    if subtype:
        claims["subtype"] = subtype
    return claims


def make_notification_body(chain: SigningChain, notification_type: str, **kwargs) -> bytes:
    """Request body for the App Store webhook: {"signedPayload": <JWS>}."""
    claims = make_notification_claims(chain, notification_type, **kwargs)
    return json.dumps({"signedPayload": chain.sign(claims)}).encode("utf-8")


# =============================================================================
# Stripe
# =============================================================================

def make_stripe_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: Optional[str] = None,
    created: Optional[int] = None,
    previous_attributes: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": data,
    }


def make_subscription(
    customer: str,
    price_id: str = "price_pro_monthly",
    status: str = "active",
    current_period_end: Optional[int] = None,
    cancel_at_period_end: bool = False,
    account_id: Optional[str] = None,
) -> Dict[str, Any]:
    subscription = {
        "id": f"sub_{uuid.uuid4().hex[:14]}",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": current_period_end or int(time.time()) + 30 * 86400,
        "items": {"data": [{"price": {"id": price_id}}]},
        "metadata": {},
    }
    if account_id:
        subscription["metadata"]["account_id"] = account_id
    return subscription


def stripe_signature_header(
    raw_body: bytes,
    secret: str = STRIPE_WEBHOOK_SECRET,
    timestamp: Optional[int] = None,
) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    return f"t={timestamp},v1={compute_signature(secret, timestamp, raw_body)}"


# =============================================================================
# Bearer tokens
# =============================================================================

def make_bearer_token(
    account_id: str,
    secret: str = AUTH_SECRET,
    expires_in: int = 3600,
    email: Optional[str] = None,
) -> str:
    now = int(time.time())
    claims = {"sub": account_id, "iat": now, "exp": now + expires_in}
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(account_id: str, **kwargs) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_bearer_token(account_id, **kwargs)}"}
