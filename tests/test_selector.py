"""Tests for authprofiles.selector -- failover resolution."""

from __future__ import annotations

from typing import Optional

import pytest

from authprofiles.exceptions import NoUsableProfile, RefreshFailed
from authprofiles.models import (
    ApiKeyCredential,
    AuthProfileStore,
    HealthStatus,
    OAuthCredential,
    TokenCredential,
    UsageStats,
)
from authprofiles.oauth.lifecycle import OAuthLifecycleManager
from authprofiles.selector import FailoverSelector, candidate_ids
from authprofiles.store.file import load_store, write_store
from authprofiles.store.lock import StoreAccessor
from authprofiles.timeutil import MS_PER_HOUR

from conftest import NOW, FakeClock


class StubRefresher:
    """Token refresher that hands out a fixed lifetime or fails."""

    def __init__(self, lifetime_ms: int = 10 * MS_PER_HOUR, error: Optional[Exception] = None):
        self.lifetime_ms = lifetime_ms
        self.error = error
        self.calls: list[str] = []

    def refresh(self, credential: OAuthCredential, now: int) -> OAuthCredential:
        self.calls.append(credential.access_token)
        if self.error is not None:
            raise self.error
        return credential.model_copy(
            update={"access_token": "fresh-at", "expires": now + self.lifetime_ms}
        )


def _oauth(expires: Optional[int], refresh_token: Optional[str] = "rt") -> OAuthCredential:
    return OAuthCredential(
        provider="openai-codex", access_token="old-at", refresh_token=refresh_token, expires=expires
    )


def _selector(
    accessor: StoreAccessor,
    refresher: Optional[StubRefresher] = None,
) -> FailoverSelector:
    clock = FakeClock()
    lifecycle = None
    if refresher is not None:
        lifecycle = OAuthLifecycleManager(
            accessor, refreshers={"openai-codex": refresher}, clock=clock
        )
    return FailoverSelector(accessor, lifecycle=lifecycle, clock=clock)


class TestCandidateIds:
    def test_order_wins_over_last_good(self) -> None:
        store = AuthProfileStore(
            order={"openai": ["openai:a", "openai:b", "openai:a"]},
            last_good={"openai": "openai:b"},
        )
        assert candidate_ids(store, "openai") == ["openai:a", "openai:b"]

    def test_last_good_when_order_missing(self) -> None:
        store = AuthProfileStore(last_good={"openai": "openai:b"})
        assert candidate_ids(store, "openai") == ["openai:b"]

    def test_last_good_when_order_empty(self) -> None:
        store = AuthProfileStore(order={"openai": []}, last_good={"openai": "openai:b"})
        assert candidate_ids(store, "openai") == ["openai:b"]

    def test_nothing(self) -> None:
        assert candidate_ids(AuthProfileStore(), "openai") == []


class TestResolve:
    def test_no_candidates(self, accessor: StoreAccessor) -> None:
        with pytest.raises(NoUsableProfile) as excinfo:
            _selector(accessor).resolve("openai")
        assert excinfo.value.candidates == []
        assert excinfo.value.exit_code == 3
        assert "No auth profiles configured for 'openai'" in str(excinfo.value)

    def test_first_usable_in_order(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={
                    "openai:a": ApiKeyCredential(provider="openai", key="a"),
                    "openai:b": ApiKeyCredential(provider="openai", key="b"),
                },
                order={"openai": ["openai:b", "openai:a"]},
            ),
        )
        profile = _selector(accessor).resolve_profile("OpenAI")
        assert profile.profile_id == "openai:b"

    def test_skips_disabled_and_cooling_down(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={
                    "openai:a": ApiKeyCredential(provider="openai", key="a"),
                    "openai:b": ApiKeyCredential(provider="openai", key="b"),
                    "openai:c": ApiKeyCredential(provider="openai", key="c"),
                },
                order={"openai": ["openai:a", "openai:b", "openai:c"]},
                usage_stats={
                    "openai:a": UsageStats(disabled_until=NOW + MS_PER_HOUR, disabled_reason="billing"),
                    "openai:b": UsageStats(cooldown_until=NOW + 60_000, failure_count=3),
                },
            ),
        )
        assert _selector(accessor).resolve_profile("openai").profile_id == "openai:c"

    def test_dangling_order_entry_is_diagnosed(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={"openai:b": ApiKeyCredential(provider="openai", key="b")},
                order={"openai": ["openai:gone", "openai:b"]},
            ),
        )
        assert _selector(accessor).resolve_profile("openai").profile_id == "openai:b"

        write_store(accessor.path, AuthProfileStore(order={"openai": ["openai:gone"]}))
        with pytest.raises(NoUsableProfile) as excinfo:
            _selector(accessor).resolve("openai")
        (diag,) = excinfo.value.candidates
        assert diag.status == HealthStatus.MISSING
        assert diag.detail == "not in store"

    def test_error_lists_every_candidate(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={
                    "anthropic:a": ApiKeyCredential(provider="anthropic", key="a"),
                    "anthropic:b": TokenCredential(provider="anthropic", token="t", expires=NOW - 1),
                },
                order={"anthropic": ["anthropic:a", "anthropic:b"]},
                usage_stats={
                    "anthropic:a": UsageStats(
                        disabled_until=NOW + 20 * MS_PER_HOUR, disabled_reason="billing"
                    )
                },
            ),
        )
        with pytest.raises(NoUsableProfile) as excinfo:
            _selector(accessor).resolve("anthropic")
        assert [c.profile_id for c in excinfo.value.candidates] == ["anthropic:a", "anthropic:b"]
        assert str(excinfo.value) == (
            "No usable auth profile for 'anthropic': "
            "anthropic:a is disabled (billing) for 20h; anthropic:b is expired"
        )

    def test_missing_expiry_is_skipped(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={"openai-codex:me": _oauth(expires=None)},
                last_good={"openai-codex": "openai-codex:me"},
            ),
        )
        with pytest.raises(NoUsableProfile) as excinfo:
            _selector(accessor).resolve("openai-codex")
        assert excinfo.value.candidates[0].status == HealthStatus.MISSING

    def test_snapshot_only(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={"openai:a": ApiKeyCredential(provider="openai", key="a")},
                last_good={"openai": "openai:a"},
            ),
        )
        with accessor.locked():
            assert _selector(accessor).resolve("openai").key == "a"


class TestOAuthRefresh:
    def _seed(self, accessor: StoreAccessor, credential: OAuthCredential) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={"openai-codex:me": credential},
                order={"openai-codex": ["openai-codex:me"]},
            ),
        )

    def test_expired_is_refreshed_and_persisted(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW - 1))
        refresher = StubRefresher()
        credential = _selector(accessor, refresher).resolve("openai-codex")
        assert credential.access_token == "fresh-at"
        assert credential.expires == NOW + 10 * MS_PER_HOUR
        stored = load_store(accessor.path).profiles["openai-codex:me"]
        assert stored.access_token == "fresh-at"

    def test_expired_refresh_failure_moves_on(self, accessor: StoreAccessor) -> None:
        write_store(
            accessor.path,
            AuthProfileStore(
                profiles={
                    "openai-codex:me": _oauth(expires=NOW - 1),
                    "openai-codex:backup": OAuthCredential(
                        provider="openai-codex", access_token="b", expires=NOW + 48 * MS_PER_HOUR
                    ),
                },
                order={"openai-codex": ["openai-codex:me", "openai-codex:backup"]},
            ),
        )
        refresher = StubRefresher(error=RefreshFailed("invalid_grant"))
        profile = _selector(accessor, refresher).resolve_profile("openai-codex")
        assert profile.profile_id == "openai-codex:backup"

    def test_expired_refresh_failure_diagnostic(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW - 1))
        refresher = StubRefresher(error=RefreshFailed("invalid_grant"))
        with pytest.raises(NoUsableProfile) as excinfo:
            _selector(accessor, refresher).resolve("openai-codex")
        (diag,) = excinfo.value.candidates
        assert diag.status == HealthStatus.EXPIRED
        assert diag.detail == "refresh failed: invalid_grant"

    def test_expired_without_refresh_token_is_skipped(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW - 1, refresh_token=None))
        refresher = StubRefresher()
        with pytest.raises(NoUsableProfile):
            _selector(accessor, refresher).resolve("openai-codex")
        assert refresher.calls == []

    def test_refresh_returning_expired_token_is_rejected(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW - 10))
        refresher = StubRefresher(lifetime_ms=-5)
        with pytest.raises(NoUsableProfile) as excinfo:
            _selector(accessor, refresher).resolve("openai-codex")
        assert excinfo.value.candidates[0].detail == "refresh returned an expired token"

    def test_expiring_is_refreshed(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW + MS_PER_HOUR))
        credential = _selector(accessor, StubRefresher()).resolve("openai-codex")
        assert credential.access_token == "fresh-at"

    def test_expiring_refresh_failure_returns_current(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW + MS_PER_HOUR))
        refresher = StubRefresher(error=RefreshFailed("down", retryable=True))
        credential = _selector(accessor, refresher).resolve("openai-codex")
        assert credential.access_token == "old-at"
        assert refresher.calls == ["old-at"]

    def test_expiring_without_lifecycle_returned_as_is(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW + MS_PER_HOUR))
        assert _selector(accessor).resolve("openai-codex").access_token == "old-at"

    def test_healthy_token_not_refreshed(self, accessor: StoreAccessor) -> None:
        self._seed(accessor, _oauth(expires=NOW + 48 * MS_PER_HOUR))
        refresher = StubRefresher()
        assert _selector(accessor, refresher).resolve("openai-codex").access_token == "old-at"
        assert refresher.calls == []


class TestNeverReturnsUnusable:
    @pytest.mark.parametrize(
        "stats",
        [
            UsageStats(disabled_until=NOW + 1, disabled_reason="billing"),
            UsageStats(cooldown_until=NOW + 1),
            None,
        ],
    )
    def test_unusable_single_candidate_raises(
        self, accessor: StoreAccessor, stats: Optional[UsageStats]
    ) -> None:
        credential = TokenCredential(provider="anthropic", token="t", expires=NOW - 1)
        store = AuthProfileStore(
            profiles={"anthropic:a": credential},
            order={"anthropic": ["anthropic:a"]},
        )
        if stats is not None:
            store.usage_stats["anthropic:a"] = stats
        write_store(accessor.path, store)
        with pytest.raises(NoUsableProfile):
            _selector(accessor).resolve("anthropic")
