# API routes
from entitlement_core.api.routes import health
from entitlement_core.api.routes import subscriptions
from entitlement_core.api.routes import webhooks_app_store
from entitlement_core.api.routes import webhooks_stripe

__all__ = ["health", "subscriptions", "webhooks_app_store", "webhooks_stripe"]
