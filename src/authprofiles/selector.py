"""Failover selection of a usable auth profile for a provider.

The selector walks the provider's preference order and returns the first
candidate the health classifier considers usable, refreshing OAuth
credentials on the way when they are close to (or past) expiry. It only
ever reads an unlocked snapshot; refresh write-backs go through the
:class:`~authprofiles.oauth.lifecycle.OAuthLifecycleManager`.
"""

from __future__ import annotations

import logging
from typing import Optional

from authprofiles.exceptions import NoUsableProfile, RefreshFailed
from authprofiles.health import classify
from authprofiles.models import (
    DEFAULT_OAUTH_WARN_MS,
    AuthProfile,
    AuthProfileStore,
    CandidateDiagnostic,
    Credential,
    HealthStatus,
    OAuthCredential,
    normalize_provider_id,
)
from authprofiles.oauth.lifecycle import OAuthLifecycleManager
from authprofiles.store.lock import StoreAccessor
from authprofiles.timeutil import Clock, now_ms

logger = logging.getLogger(__name__)


def candidate_ids(store: AuthProfileStore, provider: str) -> list[str]:
    """Return the profile ids to try for *provider*, most preferred first.

    The explicit order wins. ``last_good`` is only consulted when the
    order is empty or missing.
    """
    order = store.order.get(provider)
    if order:
        return list(dict.fromkeys(order))
    last_good = store.last_good.get(provider)
    return [last_good] if last_good else []


class FailoverSelector:
    """Pick a usable credential for a provider.

    Args:
        accessor: Store accessor providing snapshots.
        lifecycle: OAuth lifecycle manager used for refreshes. Without it,
            expiring OAuth credentials are returned as-is and expired ones
            are skipped.
        warn_after_ms: Expiry window treated as ``expiring``.
        clock: Epoch-ms clock.
    """

    def __init__(
        self,
        accessor: StoreAccessor,
        lifecycle: Optional[OAuthLifecycleManager] = None,
        warn_after_ms: int = DEFAULT_OAUTH_WARN_MS,
        clock: Clock = now_ms,
    ) -> None:
        self._accessor = accessor
        self._lifecycle = lifecycle
        self._warn_after_ms = warn_after_ms
        self._clock = clock

    def resolve(self, provider: str) -> Credential:
        """Return a usable credential for *provider*."""
        return self.resolve_profile(provider).credential

    def resolve_profile(self, provider: str) -> AuthProfile:
        """Return the first usable profile for *provider*.

        Raises:
            NoUsableProfile: If there are no candidates, or none is usable.
                The exception lists why each candidate was skipped.
        """
        provider = normalize_provider_id(provider)
        store = self._accessor.read()
        ids = candidate_ids(store, provider)
        if not ids:
            raise NoUsableProfile(provider)

        now = self._clock()
        diagnostics: list[CandidateDiagnostic] = []
        for profile_id in ids:
            profile = store.get_profile(profile_id)
            if profile is None:
                diagnostics.append(
                    CandidateDiagnostic(
                        profile_id=profile_id,
                        status=HealthStatus.MISSING,
                        detail="not in store",
                    )
                )
                continue

            if profile.credential.provider != provider:
                diagnostics.append(
                    CandidateDiagnostic(
                        profile_id=profile_id,
                        status=HealthStatus.MISSING,
                        detail=f"belongs to {profile.credential.provider}",
                    )
                )
                continue

            result = classify(profile, now, self._warn_after_ms, store.usage_stats.get(profile_id))
            if result.status == HealthStatus.EXPIRED:
                refreshed = self._refresh_expired(profile, now, diagnostics)
                if refreshed is not None:
                    return refreshed
                continue
            if not result.status.usable:
                diagnostics.append(
                    CandidateDiagnostic(
                        profile_id=profile_id,
                        status=result.status,
                        remaining_ms=result.remaining_ms,
                        reason=result.reason,
                    )
                )
                continue

            lifecycle = self._lifecycle_for(profile)
            if result.status == HealthStatus.EXPIRING and lifecycle is not None:
                return self._refresh_expiring(lifecycle, profile)
            logger.debug("Resolved %s to %s (%s)", provider, profile_id, result.status.value)
            return profile

        raise NoUsableProfile(provider, diagnostics)

    def _lifecycle_for(self, profile: AuthProfile) -> Optional[OAuthLifecycleManager]:
        """Return the lifecycle manager when *profile* can be refreshed."""
        credential = profile.credential
        if isinstance(credential, OAuthCredential) and credential.refresh_token:
            return self._lifecycle
        return None

    def _refresh_expiring(
        self, lifecycle: OAuthLifecycleManager, profile: AuthProfile
    ) -> AuthProfile:
        try:
            credential = lifecycle.refresh(profile)
        except RefreshFailed as exc:
            logger.warning(
                "Refresh of expiring profile %s failed, using current token: %s",
                profile.profile_id,
                exc,
            )
            return profile
        return AuthProfile(profile_id=profile.profile_id, credential=credential)

    def _refresh_expired(
        self,
        profile: AuthProfile,
        now: int,
        diagnostics: list[CandidateDiagnostic],
    ) -> Optional[AuthProfile]:
        lifecycle = self._lifecycle_for(profile)
        if lifecycle is None:
            diagnostics.append(
                CandidateDiagnostic(profile_id=profile.profile_id, status=HealthStatus.EXPIRED)
            )
            return None

        try:
            credential = lifecycle.refresh(profile)
        except RefreshFailed as exc:
            diagnostics.append(
                CandidateDiagnostic(
                    profile_id=profile.profile_id,
                    status=HealthStatus.EXPIRED,
                    detail=f"refresh failed: {exc}",
                )
            )
            return None

        if credential.expires is not None and credential.expires <= now:
            diagnostics.append(
                CandidateDiagnostic(
                    profile_id=profile.profile_id,
                    status=HealthStatus.EXPIRED,
                    detail="refresh returned an expired token",
                )
            )
            return None
        logger.info("Refreshed expired profile %s", profile.profile_id)
        return AuthProfile(profile_id=profile.profile_id, credential=credential)
