"""Idempotent repair passes over the auth profile store.

Each pass mutates the store it is given and returns a
:class:`MigrationResult`. Passes never do I/O themselves: the manager runs
them against a deep copy of a snapshot for a preview, or inside
:meth:`~authprofiles.store.lock.StoreAccessor.with_lock` to apply them.
Running a pass a second time reports no changes.

References held outside the store (for example a host application's own
config naming a profile id) are updated through an optional
:class:`ConfigPatcher`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Protocol, Union

from authprofiles.models import (
    AuthProfileStore,
    OAuthCredential,
    build_profile_id,
    normalize_provider_id,
)

logger = logging.getLogger(__name__)

CLAUDE_CLI_PROFILE_ID = "anthropic:claude-cli"
CODEX_CLI_PROFILE_ID = "openai-codex:codex-cli"

DEPRECATED_PROFILE_IDS: dict[str, str] = {
    CLAUDE_CLI_PROFILE_ID: (
        "Anthropic external CLI credentials are no longer read; "
        "use `authprofiles paste-token --provider anthropic` instead"
    ),
    CODEX_CLI_PROFILE_ID: (
        "OpenAI Codex external CLI credentials are no longer read; "
        "use `authprofiles login --provider openai-codex` instead"
    ),
}
"""Retired profile ids mapped to the replacement hint shown to the user."""


@dataclass
class MigrationResult:
    """Outcome of one repair pass.

    Attributes:
        changed: Whether the store was modified.
        changes: Human-readable description of each change.
    """

    changed: bool = False
    changes: list[str] = field(default_factory=list)

    def merge(self, other: MigrationResult) -> MigrationResult:
        return MigrationResult(
            changed=self.changed or other.changed,
            changes=self.changes + other.changes,
        )


class ConfigPatcher(Protocol):
    """Updates profile id references in configuration outside the store."""

    def rename_profile(self, old_profile_id: str, new_profile_id: str) -> bool:
        """Rename references; return ``True`` if anything changed."""
        ...

    def remove_profiles(self, profile_ids: list[str]) -> bool:
        """Drop references; return ``True`` if anything changed."""
        ...


def _remove_references(store: AuthProfileStore, profile_ids: set[str]) -> list[str]:
    """Drop *profile_ids* from order, usage stats and last-good."""
    changes: list[str] = []
    for provider in list(store.order):
        ids = store.order[provider]
        kept = [pid for pid in ids if pid not in profile_ids]
        if len(kept) == len(ids):
            continue
        for pid in ids:
            if pid in profile_ids:
                changes.append(f"Removed {pid} from the {provider} order")
        if kept:
            store.order[provider] = kept
        else:
            del store.order[provider]

    for pid in sorted(profile_ids):
        if store.usage_stats.pop(pid, None) is not None:
            changes.append(f"Removed usage stats for {pid}")

    for provider in list(store.last_good):
        if store.last_good[provider] in profile_ids:
            changes.append(f"Cleared last-good {store.last_good[provider]} for {provider}")
            del store.last_good[provider]
    return changes


def repair_profile_id_mismatch(
    store: AuthProfileStore,
    provider: str,
    legacy_profile_id: str,
    target_profile_id: str,
    config_patcher: Optional[ConfigPatcher] = None,
) -> MigrationResult:
    """Move a credential from *legacy_profile_id* to *target_profile_id*.

    The credential payload is moved unchanged. Order entries, usage stats
    and the last-good hint follow it. When the target id is already taken
    the store is left as is, so no credential is ever overwritten.
    """
    result = MigrationResult()
    provider = normalize_provider_id(provider)
    if legacy_profile_id == target_profile_id:
        return result

    credential = store.profiles.get(legacy_profile_id)
    if credential is None:
        return result
    if credential.provider != provider:
        logger.debug(
            "Skipping %s: belongs to %s, not %s", legacy_profile_id, credential.provider, provider
        )
        return result
    if target_profile_id in store.profiles:
        logger.warning(
            "Not moving %s: %s already exists", legacy_profile_id, target_profile_id
        )
        return result

    store.profiles[target_profile_id] = store.profiles.pop(legacy_profile_id)
    result.changes.append(f"Moved profile {legacy_profile_id} -> {target_profile_id}")

    for order_provider, ids in store.order.items():
        if legacy_profile_id in ids:
            renamed = [target_profile_id if pid == legacy_profile_id else pid for pid in ids]
            store.order[order_provider] = list(dict.fromkeys(renamed))
            result.changes.append(f"Updated the {order_provider} order")

    stats = store.usage_stats.pop(legacy_profile_id, None)
    if stats is not None:
        store.usage_stats.setdefault(target_profile_id, stats)
        result.changes.append(f"Moved usage stats to {target_profile_id}")

    for lg_provider, pid in store.last_good.items():
        if pid == legacy_profile_id:
            store.last_good[lg_provider] = target_profile_id
            result.changes.append(f"Updated last-good for {lg_provider}")

    if config_patcher is not None and config_patcher.rename_profile(
        legacy_profile_id, target_profile_id
    ):
        result.changes.append(
            f"Renamed {legacy_profile_id} -> {target_profile_id} in configuration"
        )

    result.changed = True
    return result


@dataclass(frozen=True)
class ProfileIdMismatch:
    """A credential stored under a legacy id, and the id it should have."""

    provider: str
    legacy_profile_id: str
    target_profile_id: str


def detect_profile_id_mismatches(store: AuthProfileStore) -> list[ProfileIdMismatch]:
    """Find OAuth profiles still stored under ``<provider>:default``.

    A login that reports an email is stored as ``<provider>:<email>``; older
    stores kept it under the default id. Mismatches whose target id is
    already taken are not reported.
    """
    found: list[ProfileIdMismatch] = []
    for profile_id, credential in sorted(store.profiles.items()):
        if not isinstance(credential, OAuthCredential) or not credential.email:
            continue
        if profile_id != build_profile_id(credential.provider):
            continue
        target = build_profile_id(credential.provider, credential.email)
        if target == profile_id or target in store.profiles:
            continue
        found.append(ProfileIdMismatch(credential.provider, profile_id, target))
    return found


def repair_detected_profile_ids(
    store: AuthProfileStore, config_patcher: Optional[ConfigPatcher] = None
) -> MigrationResult:
    """Run :func:`repair_profile_id_mismatch` for every detected mismatch."""
    result = MigrationResult()
    for mismatch in detect_profile_id_mismatches(store):
        result = result.merge(
            repair_profile_id_mismatch(
                store,
                mismatch.provider,
                mismatch.legacy_profile_id,
                mismatch.target_profile_id,
                config_patcher,
            )
        )
    return result


def prune_deprecated_profiles(
    store: AuthProfileStore,
    deprecated_ids: Union[Mapping[str, str], Iterable[str]] = DEPRECATED_PROFILE_IDS,
    config_patcher: Optional[ConfigPatcher] = None,
) -> MigrationResult:
    """Remove retired profile kinds and every reference to them.

    Args:
        deprecated_ids: Ids to remove. A mapping's values are shown as the
            replacement hint in the change log.
    """
    hints: Mapping[str, str] = (
        deprecated_ids if isinstance(deprecated_ids, Mapping) else dict.fromkeys(deprecated_ids, "")
    )
    result = MigrationResult()

    found = {pid for pid in hints if pid in store.profiles}
    for pid in sorted(found):
        del store.profiles[pid]
        hint = hints[pid]
        result.changes.append(f"Removed deprecated profile {pid}" + (f": {hint}" if hint else ""))

    result.changes.extend(_remove_references(store, set(hints)))

    if config_patcher is not None and config_patcher.remove_profiles(sorted(hints)):
        result.changes.append("Removed deprecated profile references from configuration")

    result.changed = bool(result.changes)
    return result


def prune_dangling_references(store: AuthProfileStore) -> MigrationResult:
    """Drop order ids, last-good hints and usage stats for missing profiles."""
    referenced = set(store.usage_stats) | set(store.last_good.values())
    for ids in store.order.values():
        referenced.update(ids)
    dangling = {pid for pid in referenced if pid not in store.profiles}

    result = MigrationResult()
    if dangling:
        result.changes = _remove_references(store, dangling)
        result.changed = bool(result.changes)
    return result
