"""
Unit tests for EntitlementService.

Tests cover:
- Account resolution through linking keys and echoed account hints
- The apply loop: conditional replace, retry on a lost race, give-up
- Preconditions re-checked on every read
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from entitlement_core.entitlements.errors import LinkingConflictError, StaleWriteError
from entitlement_core.entitlements.models import (
    CanonicalEvent,
    EntitlementStatus,
    EventKind,
    LinkingKey,
    ProviderKind,
    Tier,
)
from entitlement_core.services.entitlement_service import EntitlementService

T1 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def stripe_event(kind=EventKind.ACTIVATED, customer="cus_1", hint=None, event_id="evt_1",
                 occurred_at=T1, product_ref="price_pro_monthly"):
    return CanonicalEvent(
        provider=ProviderKind.STRIPE,
        kind=kind,
        linking_key=LinkingKey(ProviderKind.STRIPE, customer),
        occurred_at=occurred_at,
        event_id=event_id,
        product_ref=product_ref,
        period_end=occurred_at + timedelta(days=30),
        account_hint=hint,
    )


@pytest.fixture
def service(db_session, reconciler):
    return EntitlementService(db_session, reconciler)


class TestResolveAccount:

    def test_linked_identifier_wins(self, service):
        service.repo.get_or_create("acct-1")
        service.repo.link("acct-1", LinkingKey(ProviderKind.STRIPE, "cus_1"))

        assert service.resolve_account(stripe_event(hint="acct-other")) == "acct-1"

    def test_hint_establishes_first_link(self, service):
        assert service.resolve_account(stripe_event(hint="acct-2")) == "acct-2"
        assert service.repo.get_linked_id("acct-2", ProviderKind.STRIPE) == "cus_1"

    def test_no_link_and_no_hint(self, service):
        assert service.resolve_account(stripe_event()) is None

    def test_hint_for_account_linked_elsewhere(self, service):
        service.repo.get_or_create("acct-3")
        service.repo.link("acct-3", LinkingKey(ProviderKind.STRIPE, "cus_old"))

        with pytest.raises(LinkingConflictError):
            service.resolve_account(stripe_event(customer="cus_new", hint="acct-3"))


class TestApplyEvent:

    def test_applies_and_stores(self, service):
        result = service.apply_event(stripe_event(hint="acct-1"))

        assert result.applied is True
        assert result.account_id == "acct-1"
        stored = service.get_entitlement("acct-1")
        assert stored.tier == Tier.PRO
        assert stored.status == EntitlementStatus.ACTIVE
        assert stored.version == 1
        assert result.transition.snapshot == stored

    def test_unresolvable_account_is_skipped(self, service):
        result = service.apply_event(stripe_event())

        assert result.applied is False
        assert result.account_id is None
        assert result.skipped_reason == "unresolvable_account"

    def test_duplicate_reports_reason(self, service):
        service.apply_event(stripe_event(hint="acct-1"))

        result = service.apply_event(stripe_event(hint="acct-1"))

        assert result.applied is False
        assert result.skipped_reason == "duplicate"
        assert service.get_entitlement("acct-1").version == 1


class TestApplyToAccount:

    def test_retries_after_lost_race(self, service):
        service.repo.get_or_create("acct-1")
        real_replace = service.repo.replace
        outcomes = iter([False, True])

        def flaky_replace(*args, **kwargs):
            if next(outcomes):
                return real_replace(*args, **kwargs)
            return False

        with patch.object(service.repo, "replace", side_effect=flaky_replace) as mock_replace:
            transition = service.apply_to_account("acct-1", stripe_event())

        assert transition.applied is True
        assert mock_replace.call_count == 2
        assert service.get_entitlement("acct-1").tier == Tier.PRO

    def test_gives_up_after_max_attempts(self, service):
        service.repo.get_or_create("acct-1")

        with patch.object(service.repo, "replace", return_value=False) as mock_replace:
            with pytest.raises(StaleWriteError):
                service.apply_to_account("acct-1", stripe_event())

        assert mock_replace.call_count == EntitlementService.MAX_APPLY_ATTEMPTS

    def test_concurrent_writer_forces_re_reconcile(self, service):
        """The retry reads the other writer's newer snapshot and drops the stale event."""
        service.repo.get_or_create("acct-1")
        newer = stripe_event(EventKind.REFUNDED, event_id="evt_refund", occurred_at=T1 + timedelta(days=1))
        real_replace = service.repo.replace
        interfered = []

        def racing_replace(account_id, expected_version, snapshot, is_refund=False):
            if not interfered:
                interfered.append(True)
                service.apply_to_account("acct-1", newer)
            return real_replace(account_id, expected_version, snapshot, is_refund)

        with patch.object(service.repo, "replace", side_effect=racing_replace):
            transition = service.apply_to_account("acct-1", stripe_event(occurred_at=T1))

        assert transition.applied is False
        assert transition.reason == "stale"
        stored = service.get_entitlement("acct-1")
        assert stored.last_event_id == "evt_refund"
        assert stored.tier == Tier.FREE

    def test_failed_precondition_is_noop(self, service):
        service.repo.get_or_create("acct-1")

        transition = service.apply_to_account("acct-1", stripe_event(), precondition=lambda current: False)

        assert transition.applied is False
        assert transition.reason == "precondition_failed"
        assert service.get_entitlement("acct-1").version == 0
