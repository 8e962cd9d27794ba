"""Tests for authprofiles.cooldown -- billing backoff and the transient breaker."""

from __future__ import annotations

from authprofiles.cooldown import (
    BILLING_REASON,
    active_cooldown_until,
    billing_backoff_hours,
    record_failure,
    record_success,
    resolve_unusable_until,
)
from authprofiles.models import (
    ApiKeyCredential,
    AuthProfileStore,
    CooldownConfig,
    FailureKind,
    UsageStats,
)
from authprofiles.timeutil import MS_PER_HOUR, MS_PER_MINUTE

from conftest import NOW


def _store() -> AuthProfileStore:
    return AuthProfileStore(
        profiles={
            "anthropic:a": ApiKeyCredential(provider="anthropic", key="1"),
            "zai:a": ApiKeyCredential(provider="zai", key="2"),
        }
    )


class TestBillingBackoff:
    def test_doubles_then_caps(self) -> None:
        cfg = CooldownConfig()
        hours = [billing_backoff_hours(n, "anthropic", cfg) for n in range(7)]
        assert hours == [5, 10, 20, 24, 24, 24, 24]

    def test_monotonic_and_bounded(self) -> None:
        cfg = CooldownConfig(billing_backoff_hours=1, billing_max_hours=100)
        hours = [billing_backoff_hours(n, "x", cfg) for n in range(20)]
        assert hours == sorted(hours)
        assert max(hours) == 16  # exponent capped at 4
        assert all(h <= cfg.billing_max_hours for h in hours)

    def test_provider_override_replaces_base(self) -> None:
        cfg = CooldownConfig(billing_backoff_hours_by_provider={"z.ai": 1})
        assert [billing_backoff_hours(n, "zai", cfg) for n in range(3)] == [1, 2, 4]
        assert billing_backoff_hours(0, "anthropic", cfg) == 5


class TestRecordFailure:
    def test_billing_sequence_5_10_20(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        now = NOW
        expected = [5, 10, 20]
        for hours in expected:
            stats = record_failure(store, "anthropic:a", FailureKind.BILLING, now, cfg)
            assert stats.disabled_until == now + hours * MS_PER_HOUR
            assert stats.disabled_reason == BILLING_REASON
            assert stats.last_failure_at == now
            now += MS_PER_HOUR
        assert store.usage_stats["anthropic:a"].failure_count == 3

    def test_billing_plateaus_at_max(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        for i in range(6):
            stats = record_failure(store, "anthropic:a", FailureKind.BILLING, NOW + i, cfg)
        assert stats.disabled_until == NOW + 5 + 24 * MS_PER_HOUR

    def test_failure_window_restarts_counter(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        record_failure(store, "anthropic:a", FailureKind.BILLING, NOW, cfg)
        record_failure(store, "anthropic:a", FailureKind.BILLING, NOW + MS_PER_HOUR, cfg)
        later = NOW + MS_PER_HOUR + 25 * MS_PER_HOUR
        stats = record_failure(store, "anthropic:a", FailureKind.BILLING, later, cfg)
        assert stats.disabled_until == later + 5 * MS_PER_HOUR
        assert stats.failure_count == 1

    def test_failure_inside_window_keeps_counting(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        record_failure(store, "anthropic:a", FailureKind.BILLING, NOW, cfg)
        stats = record_failure(store, "anthropic:a", FailureKind.BILLING, NOW + 23 * MS_PER_HOUR, cfg)
        assert stats.failure_count == 2

    def test_transient_opens_breaker_at_threshold(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        for i in range(2):
            stats = record_failure(store, "anthropic:a", FailureKind.TRANSIENT, NOW + i, cfg)
            assert stats.cooldown_until is None
            assert stats.disabled_until is None
        stats = record_failure(store, "anthropic:a", FailureKind.TRANSIENT, NOW + 2, cfg)
        assert stats.cooldown_until == NOW + 2 + 5 * MS_PER_MINUTE
        assert stats.disabled_until is None
        assert stats.failure_count == 3

    def test_transient_uses_configured_threshold(self) -> None:
        store = _store()
        cfg = CooldownConfig(transient_failure_threshold=1, transient_cooldown_minutes=2)
        stats = record_failure(store, "anthropic:a", FailureKind.TRANSIENT, NOW, cfg)
        assert stats.cooldown_until == NOW + 2 * MS_PER_MINUTE

    def test_stats_only_profile_uses_id_prefix(self) -> None:
        store = AuthProfileStore()
        cfg = CooldownConfig(billing_backoff_hours_by_provider={"gone": 2})
        stats = record_failure(store, "gone:x", FailureKind.BILLING, NOW, cfg)
        assert stats.disabled_until == NOW + 2 * MS_PER_HOUR


class TestRecordSuccess:
    def test_resets_breaker_and_sets_last_good(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        for i in range(3):
            record_failure(store, "anthropic:a", FailureKind.TRANSIENT, NOW + i, cfg)
        record_failure(store, "anthropic:a", FailureKind.BILLING, NOW + 3, cfg)

        stats = record_success(store, "anthropic:a", NOW + 10)
        assert stats.failure_count == 0
        assert stats.disabled_until is None
        assert stats.disabled_reason is None
        assert stats.cooldown_until is None
        assert stats.last_success_at == NOW + 10
        assert store.last_good == {"anthropic": "anthropic:a"}

    def test_backoff_restarts_after_success(self) -> None:
        store = _store()
        cfg = CooldownConfig()
        record_failure(store, "anthropic:a", FailureKind.BILLING, NOW, cfg)
        record_failure(store, "anthropic:a", FailureKind.BILLING, NOW + 1, cfg)
        record_success(store, "anthropic:a", NOW + 2)
        stats = record_failure(store, "anthropic:a", FailureKind.BILLING, NOW + 3, cfg)
        assert stats.disabled_until == NOW + 3 + 5 * MS_PER_HOUR

    def test_unknown_profile_does_not_set_last_good(self) -> None:
        store = AuthProfileStore()
        record_success(store, "ghost:x", NOW)
        assert store.last_good == {}


class TestHelpers:
    def test_active_cooldown_until(self) -> None:
        assert active_cooldown_until(None, NOW) is None
        assert active_cooldown_until(UsageStats(cooldown_until=NOW + 1), NOW) == NOW + 1
        assert active_cooldown_until(UsageStats(cooldown_until=NOW), NOW) is None

    def test_resolve_unusable_until_picks_later(self) -> None:
        assert resolve_unusable_until(None) is None
        assert resolve_unusable_until(UsageStats()) is None
        stats = UsageStats(disabled_until=NOW + 10, cooldown_until=NOW + 20)
        assert resolve_unusable_until(stats) == NOW + 20
