"""
Subscription entitlement reconciliation service.

Derives one authoritative billing tier/status per account from App Store
server notifications, Stripe webhooks and client-initiated receipt syncs.
"""

__version__ = "0.1.0"
