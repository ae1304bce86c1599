"""
Entitlement expiry sweep.

Safety net for missing provider notifications: finds accounts whose paid
access has run out and applies a synthetic expired event to each.

- pending_expiry rows past expires_at
- grace_period rows past expires_at + GRACE_PERIOD_DAYS

Each account is committed on its own; a failure on one row is logged and
the sweep moves on.

Usage:
    python -m entitlement_core.jobs.expire_entitlements

Scheduled externally (cron).
"""

import logging
import sys
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Optional

from sqlalchemy.orm import Session

from entitlement_core.config.settings import Settings
from entitlement_core.database.session import build_engine, build_session_factory
from entitlement_core.entitlements.models import (
    CanonicalEvent,
    EntitlementSnapshot,
    EventKind,
    ProviderKind,
)
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.entitlements.tiers import TierResolver
from entitlement_core.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)


class ExpirySweepStats:
    """Track sweep run statistics."""

    def __init__(self):
        self.accounts_checked = 0
        self.accounts_expired = 0
        self.accounts_skipped = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "accounts_checked": self.accounts_checked,
            "accounts_expired": self.accounts_expired,
            "accounts_skipped": self.accounts_skipped,
            "errors": self.errors,
            "duration_seconds": duration
        }


def synthetic_expired_event(snapshot: EntitlementSnapshot, now: datetime) -> CanonicalEvent:
    """
    Expired event the sweep applies on the provider's behalf.

    The event id is derived from the account and the expiry it enforces, so
    a re-run against the same row is idempotent. It carries no linking key:
    the sweep targets the account directly and never links anything.
    """
    provider = snapshot.source_provider or ProviderKind.STRIPE
    expires = snapshot.expires_at.isoformat() if snapshot.expires_at else "none"
    return CanonicalEvent(
        provider=provider,
        kind=EventKind.EXPIRED,
        linking_key=None,
        occurred_at=now,
        event_id=f"sweep:expired:{snapshot.account_id}:{expires}",
    )


def _still_lapsed(candidate: EntitlementSnapshot, current: EntitlementSnapshot) -> bool:
    # A renewal landing between the scan and the write moves the row on
    return current.status == candidate.status and current.expires_at == candidate.expires_at


class EntitlementExpirySweep:
    """Applies synthetic expiry to lapsed entitlements."""

    def __init__(
        self,
        db_session: Session,
        reconciler: EntitlementReconciler,
        grace_period_days: int = 16,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.service = EntitlementService(db_session, reconciler)
        self.grace_period = timedelta(days=grace_period_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self) -> ExpirySweepStats:
        stats = ExpirySweepStats()
        now = self._clock()

        candidates = self.service.repo.find_expiring(now, self.grace_period)
        logger.info("Expiry sweep started", extra={"candidates": len(candidates), "now": now.isoformat()})

        for snapshot in candidates:
            stats.accounts_checked += 1
            try:
                transition = self.service.apply_to_account(
                    snapshot.account_id,
                    synthetic_expired_event(snapshot, now),
                    precondition=partial(_still_lapsed, snapshot),
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                stats.errors += 1
                logger.error(
                    "Failed to expire entitlement",
                    extra={"account_id": snapshot.account_id},
                    exc_info=True,
                )
                continue

            if transition.applied:
                stats.accounts_expired += 1
                logger.info(
                    "Entitlement expired by sweep",
                    extra={
                        "account_id": snapshot.account_id,
                        "previous_status": snapshot.status.value,
                        "expires_at": snapshot.expires_at.isoformat() if snapshot.expires_at else None,
                    },
                )
            else:
                stats.accounts_skipped += 1

        logger.info("Expiry sweep completed", extra=stats.to_dict())
        return stats


def run_sweep(settings: Optional[Settings] = None) -> dict:
    """Build a session from settings and run one sweep."""
    settings = settings or Settings.from_env()
    engine = build_engine(settings.database_url)
    session = build_session_factory(engine)()
    try:
        sweep = EntitlementExpirySweep(
            session,
            EntitlementReconciler(TierResolver.from_settings(settings)),
            grace_period_days=settings.grace_period_days,
        )
        return sweep.run().to_dict()
    finally:
        session.close()
        engine.dispose()


def main():
    """Entry point for running the sweep from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = run_sweep()
        print(f"Expiry sweep completed: {result}")
        sys.exit(0)
    except Exception as e:
        logger.error("Expiry sweep failed", exc_info=True)
        print(f"Expiry sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
