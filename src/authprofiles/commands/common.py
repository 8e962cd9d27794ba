"""Helpers shared by the CLI command modules."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import typer

from authprofiles.exceptions import AuthProfilesError, NoUsableProfile
from authprofiles.manager import AuthProfileManager, create_default_manager
from authprofiles.models import Credential, credential_expires, credential_secret, mask_secret
from authprofiles.output import error, suggest


def get_manager(ctx: typer.Context) -> AuthProfileManager:
    """Build a manager from the global ``--store`` flag and the settings file."""
    from authprofiles.config import resolve_settings

    obj = ctx.obj or {}
    settings = resolve_settings(cli_store_path=obj.get("store"))
    return create_default_manager(settings)


def is_forced(ctx: typer.Context) -> bool:
    return bool(ctx.obj.get("force", False)) if ctx.obj else False


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Report :class:`AuthProfilesError` on stderr and exit with its code."""
    try:
        yield
    except AuthProfilesError as exc:
        error(str(exc))
        if isinstance(exc, NoUsableProfile) and not exc.candidates:
            suggest(f"Add one: authprofiles add-key --provider {exc.provider}")
        raise typer.Exit(code=exc.exit_code) from None


def format_timestamp(epoch_ms: Optional[int]) -> str:
    if epoch_ms is None:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def credential_summary(profile_id: str, credential: Credential) -> dict[str, str]:
    """Display-safe description of a credential (the secret is masked)."""
    return {
        "profile": profile_id,
        "provider": credential.provider,
        "type": credential.type,
        "secret": mask_secret(credential_secret(credential)),
        "email": credential.email or "-",
        "expires": format_timestamp(credential_expires(credential)),
    }
