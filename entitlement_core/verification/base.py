"""
Verifier contracts.

NotificationVerifier authenticates a provider webhook delivery.
ReceiptVerifier authenticates a receipt submitted by one of our clients.
Both produce a VerifiedPayload or raise a VerificationError subclass.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Optional

from entitlement_core.entitlements.models import ProviderKind, VerifiedPayload


def content_hash(raw: bytes) -> str:
    """SHA-256 hex digest used as an idempotency fallback."""
    return hashlib.sha256(raw).hexdigest()


class NotificationVerifier(ABC):
    """Authenticates and decodes provider webhook bodies."""

    provider: ProviderKind

    @abstractmethod
    def verify(self, raw_body: bytes, signature_header: Optional[str] = None) -> VerifiedPayload:
        """
        Args:
            raw_body: Exact request body bytes
            signature_header: Provider signature header, if the provider uses one

        Raises:
            SignatureInvalidError, MalformedPayloadError, UnknownKeyIdError
        """


class ReceiptVerifier(ABC):
    """Authenticates a client-submitted purchase receipt."""

    provider: ProviderKind

    @abstractmethod
    async def verify_receipt(self, receipt: str) -> VerifiedPayload:
        """
        Raises:
            VerificationError: Receipt is not authentic or not decodable
            ProviderUnavailableError: Provider lookup failed
        """
