"""Health classification of auth profiles.

:func:`classify` is a pure function of a profile, its usage stats and the
current time. It is used by the failover selector to skip unusable
candidates and by :func:`build_health_summary` to render status tables.
"""

from __future__ import annotations

from typing import Optional

from authprofiles.cooldown import active_cooldown_until
from authprofiles.models import (
    DEFAULT_OAUTH_WARN_MS,
    ApiKeyCredential,
    AuthProfile,
    AuthProfileStore,
    HealthResult,
    HealthStatus,
    ProfileHealth,
    UsageStats,
)

__all__ = [
    "DEFAULT_OAUTH_WARN_MS",
    "build_health_summary",
    "classify",
]


def classify(
    profile: AuthProfile,
    now: int,
    warn_after_ms: int = DEFAULT_OAUTH_WARN_MS,
    stats: Optional[UsageStats] = None,
) -> HealthResult:
    """Classify *profile* at time *now*.

    Rules, first match wins:

    1. ``disabled_until`` in the future -> ``disabled``.
    2. An open cooldown window -> ``cooling-down``.
    3. OAuth/token credential without ``expires`` -> ``missing``.
    4. ``expires <= now`` -> ``expired``.
    5. ``expires - now <= warn_after_ms`` -> ``expiring``.
    6. Otherwise ``ok``.

    API keys skip rules 3-5.
    """
    if stats is not None and stats.disabled_until is not None and now < stats.disabled_until:
        return HealthResult(
            status=HealthStatus.DISABLED,
            remaining_ms=stats.disabled_until - now,
            reason=stats.disabled_reason,
            until=stats.disabled_until,
        )

    cooldown_until = active_cooldown_until(stats, now)
    if cooldown_until is not None:
        return HealthResult(
            status=HealthStatus.COOLING_DOWN,
            remaining_ms=cooldown_until - now,
            until=cooldown_until,
        )

    credential = profile.credential
    if isinstance(credential, ApiKeyCredential):
        return HealthResult(status=HealthStatus.OK)

    expires = credential.expires
    if expires is None:
        return HealthResult(status=HealthStatus.MISSING, reason="no expiry recorded")
    if expires <= now:
        return HealthResult(status=HealthStatus.EXPIRED, until=expires)
    remaining = expires - now
    if remaining <= warn_after_ms:
        return HealthResult(status=HealthStatus.EXPIRING, remaining_ms=remaining, until=expires)
    return HealthResult(status=HealthStatus.OK, remaining_ms=remaining, until=expires)


def classify_in_store(
    store: AuthProfileStore,
    profile: AuthProfile,
    now: int,
    warn_after_ms: int = DEFAULT_OAUTH_WARN_MS,
) -> HealthResult:
    """Classify *profile* using its usage stats from *store*."""
    return classify(profile, now, warn_after_ms, store.usage_stats.get(profile.profile_id))


def build_health_summary(
    store: AuthProfileStore,
    now: int,
    warn_after_ms: int = DEFAULT_OAUTH_WARN_MS,
) -> list[ProfileHealth]:
    """Return one :class:`~authprofiles.models.ProfileHealth` per stored profile.

    Rows are sorted by provider, then profile id.
    """
    rows: list[ProfileHealth] = []
    entries = sorted(store.profiles.items(), key=lambda item: (item[1].provider, item[0]))
    for profile_id, credential in entries:
        profile = AuthProfile(profile_id=profile_id, credential=credential)
        result = classify_in_store(store, profile, now, warn_after_ms)
        rows.append(
            ProfileHealth(
                profile_id=profile_id,
                provider=profile.provider,
                type=profile.type,
                status=result.status,
                remaining_ms=result.remaining_ms,
                reason=result.reason,
                until=result.until,
            )
        )
    return rows
