"""
App Store Server Notifications v2 verifier.

A notification body is {"signedPayload": "<JWS>"}. The JWS header either
carries the signing certificate chain (x5c) or a key id (kid):

- x5c: every certificate must be inside its validity window and directly
  issued by the next one; the last certificate must be one of the trusted
  roots or be directly issued by one. Issuing certificates must be CAs, and
  the leaf and intermediate must carry Apple's App Store marker extensions,
  so other certificates under the same root (Apple Pay, developer IDs)
  cannot sign notifications. The leaf's public key verifies the signature.
- kid: the public key comes from the SigningKeyCache.

The notification's data.signedTransactionInfo and data.signedRenewalInfo
are themselves JWS and are verified the same way.

Documentation: https://developer.apple.com/documentation/appstoreservernotifications
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from jwt.exceptions import DecodeError, InvalidSignatureError, InvalidTokenError

from entitlement_core.entitlements.errors import (
    MalformedPayloadError,
    SignatureInvalidError,
)
from entitlement_core.entitlements.models import ProviderKind, VerifiedPayload
from entitlement_core.verification.base import (
    NotificationVerifier,
    ReceiptVerifier,
    content_hash,
)
from entitlement_core.verification.signing_keys import SigningKeyCache

logger = logging.getLogger(__name__)

# Event type assigned to client-submitted StoreKit 2 transactions
TRANSACTION_EVENT_TYPE = "TRANSACTION"

# Marker extensions Apple puts on App Store receipt signing certificates
APPLE_LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a PEM or DER certificate."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _is_directly_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _has_extension(cert: x509.Certificate, oid: x509.ObjectIdentifier) -> bool:
    try:
        cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound:
        return False
    return True


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    return constraints.ca


def _from_millis(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayloadError(f"Invalid millisecond timestamp: {value!r}")


def transaction_subtype(transaction: Dict[str, Any]) -> str:
    """
    Classify a StoreKit 2 transaction.

    REVOKED when the transaction has been refunded or revoked, OFFER when it
    redeemed an offer, RENEWAL when it is not the original purchase,
    PURCHASE otherwise.
    """
    if transaction.get("revocationDate") is not None:
        return "REVOKED"
    if transaction.get("offerType") is not None or transaction.get("offerIdentifier"):
        return "OFFER"
    original_id = transaction.get("originalTransactionId")
    if original_id and str(original_id) != str(transaction.get("transactionId")):
        return "RENEWAL"
    return "PURCHASE"


class AppStoreNotificationVerifier(NotificationVerifier):
    """
    Verifies App Store signed payloads and transactions.

    Usage:
        verifier = AppStoreNotificationVerifier(root_certificates=[pem_bytes])
        payload = verifier.verify(request_body)
    """

    provider = ProviderKind.APP_STORE

    def __init__(
        self,
        root_certificates: Sequence[bytes] = (),
        key_cache: Optional[SigningKeyCache] = None,
        bundle_id: Optional[str] = None,
        algorithms: Sequence[str] = ("ES256",),
        clock: Optional[Callable[[], datetime]] = None,
        leaf_marker_oid: Optional[x509.ObjectIdentifier] = APPLE_LEAF_MARKER_OID,
        intermediate_marker_oid: Optional[x509.ObjectIdentifier] = APPLE_INTERMEDIATE_MARKER_OID,
    ):
        """
        Args:
            root_certificates: Trusted root certificates, PEM or DER
            key_cache: Key-id lookup for payloads without x5c
            bundle_id: When set, payloads for other bundles are rejected
            algorithms: Accepted JWS algorithms
            clock: Returns the current aware datetime (certificate validity)
            leaf_marker_oid: Extension the signing leaf must carry; None skips the check
            intermediate_marker_oid: Extension the intermediate must carry; None skips the check
        """
        self._roots: List[x509.Certificate] = [load_certificate(c) for c in root_certificates]
        self._key_cache = key_cache
        self.bundle_id = bundle_id
        self.algorithms = list(algorithms)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.leaf_marker_oid = leaf_marker_oid
        self.intermediate_marker_oid = intermediate_marker_oid

        if not self._roots and key_cache is None:
            logger.warning(
                "App Store verifier has no trusted roots or key cache; all payloads will be rejected"
            )

    # -------------------------------------------------------------------------
    # Key resolution
    # -------------------------------------------------------------------------

    def _key_from_chain(self, x5c: Any):
        if not isinstance(x5c, list) or not x5c:
            raise SignatureInvalidError("x5c header is not a certificate list")

        try:
            chain = [x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c]
        except (ValueError, TypeError, binascii.Error) as e:
            raise SignatureInvalidError(f"Undecodable certificate in x5c chain: {e}")

        now = self._clock()
        for cert in chain:
            if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
                raise SignatureInvalidError(
                    f"Certificate outside validity window: {cert.subject.rfc4514_string()}"
                )

        for child, parent in zip(chain, chain[1:]):
            if not _is_directly_issued_by(child, parent):
                raise SignatureInvalidError("Certificate chain is broken")

        top = chain[-1]
        if not any(top == root or _is_directly_issued_by(top, root) for root in self._roots):
            raise SignatureInvalidError("Certificate chain does not end at a trusted root")

        for issuer in chain[1:]:
            if not _is_ca(issuer):
                raise SignatureInvalidError(
                    f"Issuing certificate is not a CA: {issuer.subject.rfc4514_string()}"
                )

        if self.leaf_marker_oid is not None and not _has_extension(chain[0], self.leaf_marker_oid):
            raise SignatureInvalidError("Leaf certificate is not an App Store signing certificate")
        if self.intermediate_marker_oid is not None:
            if len(chain) < 2 or not _has_extension(chain[1], self.intermediate_marker_oid):
                raise SignatureInvalidError("Intermediate certificate is not an App Store signing CA")

        return chain[0].public_key()

    def _resolve_key(self, header: Dict[str, Any]):
        if header.get("x5c"):
            return self._key_from_chain(header["x5c"])
        if header.get("kid") and self._key_cache is not None:
            return self._key_cache.get_key(header["kid"]).key
        raise SignatureInvalidError("JWS header carries neither x5c nor a resolvable kid")

    # -------------------------------------------------------------------------
    # JWS decoding
    # -------------------------------------------------------------------------

    def _verify_jws(self, token: Any) -> Dict[str, Any]:
        """
        Verify one compact JWS and return its claims.

        Raises:
            MalformedPayloadError: Not a three-segment token or undecodable
            SignatureInvalidError: Bad algorithm, chain or signature
            UnknownKeyIdError: kid not in the key cache
        """
        if not isinstance(token, str) or token.count(".") != 2 or not all(token.split(".")):
            raise MalformedPayloadError("Signed payload is not a compact JWS")

        try:
            header = jwt.get_unverified_header(token)
        except DecodeError as e:
            raise MalformedPayloadError(f"Undecodable JWS header: {e}")

        if header.get("alg") not in self.algorithms:
            raise SignatureInvalidError(f"Algorithm not allowed: {header.get('alg')}")

        key = self._resolve_key(header)

        try:
            return jwt.decode(
                token,
                key=key,
                algorithms=self.algorithms,
                options={"verify_aud": False, "verify_iss": False},
            )
        except InvalidSignatureError:
            raise SignatureInvalidError("JWS signature verification failed")
        except DecodeError as e:
            raise MalformedPayloadError(f"Undecodable JWS: {e}")
        except InvalidTokenError as e:
            raise SignatureInvalidError(f"Invalid JWS: {e}")

    def _check_bundle(self, bundle_id: Optional[str]) -> None:
        if self.bundle_id and bundle_id != self.bundle_id:
            logger.warning(
                "App Store payload for unexpected bundle",
                extra={"expected_bundle_id": self.bundle_id, "bundle_id": bundle_id},
            )
            raise SignatureInvalidError(f"Payload is for bundle {bundle_id!r}")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def verify(self, raw_body: bytes, signature_header: Optional[str] = None) -> VerifiedPayload:
        """
        Verify a notification request body.

        The signature lives inside the body, so signature_header is ignored.
        """
        try:
            body = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise MalformedPayloadError("Notification body is not JSON")

        if not isinstance(body, dict) or not isinstance(body.get("signedPayload"), str):
            raise MalformedPayloadError("Notification body has no signedPayload")

        claims = self._verify_jws(body["signedPayload"])
        notification_type = claims.get("notificationType")
        if not notification_type:
            raise MalformedPayloadError("Notification has no notificationType")

        data = claims.get("data") or {}
        self._check_bundle(data.get("bundleId"))

        decoded = dict(claims)
        if data.get("signedTransactionInfo"):
            decoded["transaction"] = self._verify_jws(data["signedTransactionInfo"])
        if data.get("signedRenewalInfo"):
            decoded["renewal_info"] = self._verify_jws(data["signedRenewalInfo"])

        payload_hash = content_hash(raw_body)
        return VerifiedPayload(
            provider=self.provider,
            event_id=claims.get("notificationUUID") or f"app_store:{payload_hash}",
            event_type=notification_type,
            subtype=claims.get("subtype"),
            data=decoded,
            signed_at=_from_millis(claims.get("signedDate")),
            payload_hash=payload_hash,
        )

    def verify_transaction(self, signed_transaction: str) -> VerifiedPayload:
        """
        Verify a bare StoreKit 2 signed transaction (client sync receipt).

        Returns:
            VerifiedPayload with event_type TRANSACTION and a
            PURCHASE / RENEWAL / OFFER / REVOKED subtype
        """
        transaction = self._verify_jws(signed_transaction)
        self._check_bundle(transaction.get("bundleId"))

        if not transaction.get("transactionId"):
            raise MalformedPayloadError("Transaction has no transactionId")

        payload_hash = content_hash(signed_transaction.encode("utf-8"))
        return VerifiedPayload(
            provider=self.provider,
            event_id=f"app_store:txn:{transaction['transactionId']}",
            event_type=TRANSACTION_EVENT_TYPE,
            subtype=transaction_subtype(transaction),
            data={"transaction": transaction},
            signed_at=_from_millis(transaction.get("signedDate")),
            payload_hash=payload_hash,
        )


class AppStoreReceiptVerifier(ReceiptVerifier):
    """Client sync receipts for the App Store are signed transactions."""

    provider = ProviderKind.APP_STORE

    def __init__(self, verifier: AppStoreNotificationVerifier):
        self.verifier = verifier

    async def verify_receipt(self, receipt: str) -> VerifiedPayload:
        return self.verifier.verify_transaction(receipt)
