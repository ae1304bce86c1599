"""
Runtime settings read from the environment.

All configuration lives in one frozen Settings object built at startup by
create_app() and the expiry sweep. Nothing else in the package reads
os.environ directly.

Usage:
    from entitlement_core.config.settings import Settings

    settings = Settings.from_env()
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


DEFAULT_STRIPE_API_BASE = "https://api.stripe.com"
DEFAULT_WEB_APP_URL = "https://app.swiftlyfeedback.com"
DEFAULT_GRACE_PERIOD_DAYS = 16
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300
DEFAULT_KEY_CACHE_TTL_SECONDS = 3600

# Env var -> tier for the Stripe price table
STRIPE_PRICE_ENV_VARS = {
    "STRIPE_PRICE_PRO_MONTHLY": "pro",
    "STRIPE_PRICE_PRO_YEARLY": "pro",
    "STRIPE_PRICE_TEAM_MONTHLY": "team",
    "STRIPE_PRICE_TEAM_YEARLY": "team",
}


def _normalize_database_url(url: str) -> str:
    # SQLAlchemy 2.x rejects the legacy postgres:// scheme
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Process configuration."""

    database_url: str = "sqlite:///./entitlements.db"
    env: str = "development"
    log_level: str = "INFO"

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    stripe_api_base: str = DEFAULT_STRIPE_API_BASE
    stripe_prices: Dict[str, str] = field(default_factory=dict)

    # App Store
    app_store_root_cert_paths: Tuple[str, ...] = ()
    app_store_jwks_url: Optional[str] = None
    app_store_key_cache_ttl_seconds: int = DEFAULT_KEY_CACHE_TTL_SECONDS
    app_store_bundle_id: Optional[str] = None
    app_store_algorithms: Tuple[str, ...] = ("ES256",)

    # Entitlement lifecycle
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS

    web_app_url: str = DEFAULT_WEB_APP_URL
    auth_jwt_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        stripe_prices = {}
        for env_var, tier in STRIPE_PRICE_ENV_VARS.items():
            price_id = _optional_env(env_var)
            if price_id:
                stripe_prices[price_id] = tier

        cert_paths = tuple(
            p.strip()
            for p in os.getenv("APP_STORE_ROOT_CERT_PATHS", "").split(",")
            if p.strip()
        )

        return cls(
            database_url=_normalize_database_url(
                os.getenv("DATABASE_URL", cls.database_url)
            ),
            env=os.getenv("ENV", cls.env),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            stripe_secret_key=_optional_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_optional_env("STRIPE_WEBHOOK_SECRET"),
            stripe_webhook_tolerance_seconds=_int_env(
                "STRIPE_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS
            ),
            stripe_api_base=os.getenv("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE).rstrip("/"),
            stripe_prices=stripe_prices,
            app_store_root_cert_paths=cert_paths,
            app_store_jwks_url=_optional_env("APP_STORE_JWKS_URL"),
            app_store_key_cache_ttl_seconds=_int_env(
                "APP_STORE_KEY_CACHE_TTL_SECONDS", DEFAULT_KEY_CACHE_TTL_SECONDS
            ),
            app_store_bundle_id=_optional_env("APP_STORE_BUNDLE_ID"),
            grace_period_days=_int_env("GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS),
            web_app_url=os.getenv("WEB_APP_URL", DEFAULT_WEB_APP_URL).rstrip("/"),
            auth_jwt_secret=_optional_env("AUTH_JWT_SECRET"),
        )

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    def load_root_certificates(self) -> Tuple[bytes, ...]:
        """Read the trusted App Store root certificates (PEM or DER)."""
        certs = []
        for path in self.app_store_root_cert_paths:
            with open(path, "rb") as f:
                certs.append(f.read())
        return tuple(certs)
