"""Doctor command -- report unhealthy profiles and repair the store.

``authprofiles doctor`` previews every repair pass and lists profiles that
need attention. With ``--fix`` (or the global ``--force``) the repairs are
applied under the store lock and expiring or expired OAuth profiles are
refreshed; a failed refresh is reported per profile and does not stop the
others.
"""

from __future__ import annotations

from typing import Optional

import typer

from authprofiles.commands.common import exit_on_error, get_manager, is_forced
from authprofiles.exceptions import InvalidUsageError, RefreshFailed
from authprofiles.manager import AuthProfileManager
from authprofiles.migration import MigrationResult
from authprofiles.models import HealthStatus, ProfileHealth
from authprofiles.output import info, print_data, success, suggest, warning
from authprofiles.timeutil import format_remaining_short


def _parse_move(move: str) -> tuple[str, str]:
    legacy, sep, target = move.partition("=")
    if not sep or not legacy.strip() or not target.strip():
        raise InvalidUsageError(f"--move expects LEGACY_ID=TARGET_ID, got {move!r}")
    return legacy.strip(), target.strip()


def _report(title: str, result: MigrationResult, applied: bool) -> None:
    if not result.changes:
        return
    info(f"{title}{'' if applied else ' (preview)'}:")
    for change in result.changes:
        print_data(f"- {change}")


_REFRESHABLE = (HealthStatus.EXPIRED, HealthStatus.EXPIRING, HealthStatus.MISSING)


def _refresh_targets(rows: list[ProfileHealth]) -> list[ProfileHealth]:
    return [r for r in rows if r.type == "oauth" and r.status in _REFRESHABLE]


def _refresh_oauth(manager: AuthProfileManager, targets: list[ProfileHealth]) -> list[str]:
    """Refresh each target; return one error line per profile that failed."""
    errors: list[str] = []
    for row in targets:
        try:
            manager.refresh_profile(row.profile_id)
        except RefreshFailed as exc:
            errors.append(f"{row.profile_id}: {exc}")
        else:
            success(f"Refreshed {row.profile_id}")
    return errors


def _hint(row: ProfileHealth) -> None:
    if row.status == HealthStatus.DISABLED and row.reason == "billing":
        suggest(f"Top up {row.provider} credits (billing) or switch provider")
    elif row.status in (HealthStatus.DISABLED, HealthStatus.COOLING_DOWN):
        suggest("Wait for the cooldown to end or switch provider")
    elif row.status in (HealthStatus.EXPIRED, HealthStatus.MISSING):
        suggest(f"Re-authenticate: authprofiles login --provider {row.provider}")


def doctor_command(
    ctx: typer.Context,
    fix: bool = typer.Option(
        False, "--fix", help="Apply repairs and refresh OAuth tokens instead of previewing."
    ),
    move: Optional[str] = typer.Option(
        None,
        "--move",
        help="Move a profile to a new id, e.g. anthropic:default=anthropic:me@example.com.",
    ),
) -> None:
    """Check profile health and repair the store.

    OAuth profiles still stored under ``<provider>:default`` are moved to
    their ``<provider>:<email>`` id. With ``--fix``, expiring and expired
    OAuth tokens are refreshed as well.

    Example::

        authprofiles doctor
        authprofiles doctor --fix
        authprofiles doctor --fix --move anthropic:default=anthropic:work
    """
    apply = fix or is_forced(ctx)
    refresh_errors: list[str] = []
    with exit_on_error():
        manager = get_manager(ctx)
        results: list[tuple[str, MigrationResult]] = []

        if move:
            legacy, target = _parse_move(move)
            provider = manager.get_profile(legacy).provider
            if apply:
                results.append(
                    ("Profile id repair", manager.apply_repair_profile_id(provider, legacy, target))
                )
            else:
                results.append(
                    ("Profile id repair", manager.preview_repair_profile_id(provider, legacy, target))
                )

        if apply:
            results.append(("Legacy profile ids", manager.apply_repair_detected_profile_ids()))
            results.append(("Deprecated profiles", manager.apply_prune_deprecated()))
            results.append(("Dangling references", manager.apply_prune_dangling()))
        else:
            results.append(("Legacy profile ids", manager.preview_repair_detected_profile_ids()))
            results.append(("Deprecated profiles", manager.preview_prune_deprecated()))
            results.append(("Dangling references", manager.preview_prune_dangling()))

        rows = manager.health_summary()
        targets = _refresh_targets(rows)
        if apply and targets:
            refresh_errors = _refresh_oauth(manager, targets)
            rows = manager.health_summary()

    for title, result in results:
        _report(title, result, apply)

    pending = any(result.changed for _, result in results)
    if pending and not apply:
        suggest("Apply these repairs: authprofiles doctor --fix")
    elif pending:
        success("Repairs applied.")

    for line in refresh_errors:
        warning(f"OAuth refresh failed for {line}")

    unhealthy = [r for r in rows if r.status != HealthStatus.OK]
    for r in unhealthy:
        detail = r.status.value
        if r.remaining_ms is not None:
            detail += f" ({format_remaining_short(r.remaining_ms)} left)"
        if r.reason:
            detail += f": {r.reason}"
        warning(f"{r.profile_id} is {detail}")
        _hint(r)
    if targets and not apply:
        suggest("Refresh OAuth tokens: authprofiles doctor --fix")

    if not pending and not unhealthy:
        success("All auth profiles look healthy.")
