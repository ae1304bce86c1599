"""
Structured error classes for entitlement verification and enforcement.
"""

from typing import Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "entitlement_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


# =============================================================================
# Verification failures (terminal per request, provider redelivers)
# =============================================================================

class VerificationError(EntitlementError):
    """Raised when an inbound payload cannot be authenticated or decoded."""
    error_code = "verification_failed"


class SignatureInvalidError(VerificationError):
    """Bad or absent signature, broken certificate chain, replay-window violation."""
    error_code = "signature_invalid"


class MalformedPayloadError(VerificationError):
    """Body could not be decoded into the provider's payload shape."""
    error_code = "malformed_payload"


class UnknownKeyIdError(VerificationError):
    """Signing key id is not in the provider's published key set."""
    error_code = "unknown_key_id"

    def __init__(self, key_id: str):
        super().__init__(f"Unknown signing key id: {key_id}")
        self.key_id = key_id


# =============================================================================
# Normalization / reconciliation outcomes
# =============================================================================

class UnmappableEventTypeError(EntitlementError):
    """Provider event type has no canonical mapping. Logged and dropped."""
    error_code = "unmappable_event_type"

    def __init__(self, provider: str, event_type: str, subtype: Optional[str] = None):
        label = f"{event_type}/{subtype}" if subtype else event_type
        super().__init__(f"No canonical mapping for {provider} event '{label}'")
        self.provider = provider
        self.event_type = event_type
        self.subtype = subtype


class DisallowedEventKindError(EntitlementError):
    """Client-submitted receipt decoded to an event clients may not report."""
    error_code = "disallowed_event_kind"

    def __init__(self, kind: str, reason: Optional[str] = None):
        super().__init__(reason or f"Event kind '{kind}' cannot be reported by a client")
        self.kind = kind


class LinkingConflictError(EntitlementError):
    """A provider identifier is already linked to a different account."""
    error_code = "linking_conflict"


class StaleWriteError(EntitlementError):
    """Conditional replace lost the race to a concurrent writer."""
    error_code = "stale_write"


class ProviderUnavailableError(EntitlementError):
    """Outbound billing provider call failed. Retryable by the caller."""
    error_code = "provider_unavailable"
    retryable = True


class UnknownProductError(EntitlementError):
    """Checkout requested for a product reference with no tier."""
    error_code = "unknown_product"


class NoBillingCustomerError(EntitlementError):
    """Billing portal requested for an account never linked to a customer."""
    error_code = "no_billing_customer"


# =============================================================================
# Access gate
# =============================================================================

class TierRequirementError(EntitlementError):
    """
    Raised when a feature requires a higher tier than the account holds.

    Includes machine-readable fields for programmatic handling.
    """
    error_code = "payment_required"

    def __init__(
        self,
        feature: str,
        current_tier: str,
        required_tier: str,
        limit: Optional[int] = None,
        current: Optional[int] = None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        self.feature = feature
        self.current_tier = current_tier
        self.required_tier = required_tier
        self.limit = limit
        self.current = current
        self.http_status = http_status
        super().__init__(f"{feature} requires the {required_tier} tier")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "reason": self.message,
            "feature": self.feature,
            "current_tier": self.current_tier,
            "required_tier": self.required_tier,
            "limit": self.limit,
            "current": self.current,
        }
