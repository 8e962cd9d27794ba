"""Cooldown policy: the circuit breaker that keeps broken profiles out of rotation.

Three events update a profile's :class:`~authprofiles.models.UsageStats`:

* **billing failure** -- exponential backoff, ``base * 2**n`` hours capped
  at ``billing_max_hours``, stored as ``disabled_until`` with reason
  ``"billing"``.
* **transient failure** -- counted; once the count reaches
  ``transient_failure_threshold`` within the failure window a short
  ``cooldown_until`` window opens.
* **success** -- resets the breaker and records the profile as the
  provider's last-good.

All functions mutate the store passed to them and are meant to run inside
:meth:`~authprofiles.store.lock.StoreAccessor.with_lock`.
"""

from __future__ import annotations

import logging
from typing import Optional

from authprofiles.models import (
    AuthProfileStore,
    CooldownConfig,
    FailureKind,
    UsageStats,
    normalize_provider_id,
)
from authprofiles.timeutil import MS_PER_HOUR, MS_PER_MINUTE

logger = logging.getLogger(__name__)

BILLING_BACKOFF_EXPONENT_CAP = 4
BILLING_REASON = "billing"


def billing_backoff_hours(
    failure_count: int, provider: str, config: CooldownConfig
) -> float:
    """Return the billing disable duration for the next failure.

    Args:
        failure_count: Failures already counted in the current window.
        provider: Provider id, used to look up a per-provider base.
        config: Cooldown settings.
    """
    base = config.billing_backoff_hours_by_provider.get(
        normalize_provider_id(provider), config.billing_backoff_hours
    )
    exponent = min(max(failure_count, 0), BILLING_BACKOFF_EXPONENT_CAP)
    return min(config.billing_max_hours, base * (2**exponent))


def active_cooldown_until(stats: Optional[UsageStats], now: int) -> Optional[int]:
    """Return ``cooldown_until`` if the transient cooldown window is open at *now*."""
    if stats is None or stats.cooldown_until is None:
        return None
    return stats.cooldown_until if now < stats.cooldown_until else None


def resolve_unusable_until(stats: Optional[UsageStats]) -> Optional[int]:
    """Return the later of ``disabled_until`` and ``cooldown_until`` for display."""
    if stats is None:
        return None
    values = [v for v in (stats.disabled_until, stats.cooldown_until) if v is not None]
    return max(values) if values else None


def _window_expired(stats: UsageStats, now: int, config: CooldownConfig) -> bool:
    if stats.last_failure_at is None:
        return False
    window_ms = config.failure_window_hours * MS_PER_HOUR
    return now - stats.last_failure_at > window_ms


def record_failure(
    store: AuthProfileStore,
    profile_id: str,
    kind: FailureKind,
    now: int,
    config: CooldownConfig,
) -> UsageStats:
    """Apply a reported failure to *profile_id*'s usage stats.

    The provider is taken from the stored credential; a stats-only entry
    (profile already removed) falls back to the id prefix before ``:``.

    Returns:
        The updated stats object (also stored in ``store.usage_stats``).
    """
    stats = store.ensure_stats(profile_id)
    if _window_expired(stats, now, config):
        logger.debug("Failure window elapsed for %s, restarting counter", profile_id)
        stats.failure_count = 0

    if kind == FailureKind.BILLING:
        credential = store.profiles.get(profile_id)
        provider = credential.provider if credential else profile_id.split(":", 1)[0]
        hours = billing_backoff_hours(stats.failure_count, provider, config)
        stats.disabled_until = now + int(hours * MS_PER_HOUR)
        stats.disabled_reason = BILLING_REASON
        stats.failure_count += 1
        stats.last_failure_at = now
        logger.info(
            "Disabled %s for %gh after billing failure #%d",
            profile_id,
            hours,
            stats.failure_count,
        )
        return stats

    stats.failure_count += 1
    stats.last_failure_at = now
    if stats.failure_count >= config.transient_failure_threshold:
        stats.cooldown_until = now + int(config.transient_cooldown_minutes * MS_PER_MINUTE)
        logger.info(
            "Cooling down %s for %gm after %d transient failures",
            profile_id,
            config.transient_cooldown_minutes,
            stats.failure_count,
        )
    return stats


def record_success(store: AuthProfileStore, profile_id: str, now: int) -> UsageStats:
    """Reset the circuit breaker for *profile_id* and mark it last-good.

    The last-good hint is only updated while the profile still exists.
    """
    stats = store.ensure_stats(profile_id)
    stats.failure_count = 0
    stats.disabled_until = None
    stats.disabled_reason = None
    stats.cooldown_until = None
    stats.last_success_at = now

    credential = store.profiles.get(profile_id)
    if credential is not None:
        store.last_good[credential.provider] = profile_id
    return stats
