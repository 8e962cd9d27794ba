"""Profile commands -- inspect, add, resolve and remove auth profiles.

These are registered directly on the root app::

    authprofiles status
    authprofiles add-key --provider openai --name work
    authprofiles paste-token --provider anthropic --expires-in 30d
    authprofiles login --provider openai-codex
    authprofiles resolve anthropic
    authprofiles refresh openai-codex:me@example.com
    authprofiles remove anthropic:manual
"""

from __future__ import annotations

import webbrowser
from typing import Optional

import typer

from authprofiles.commands.common import (
    credential_summary,
    exit_on_error,
    format_timestamp,
    get_manager,
    is_forced,
)
from authprofiles.exceptions import InvalidUsageError
from authprofiles.models import (
    ApiKeyCredential,
    HealthStatus,
    TokenCredential,
    build_profile_id,
    normalize_provider_id,
)
from authprofiles.oauth.interactive import DEFAULT_LOGIN_TIMEOUT_SECONDS
from authprofiles.output import (
    OutputFormat,
    format_data,
    get_output,
    info,
    print_table,
    success,
    suggest,
)
from authprofiles.timeutil import format_remaining_short, parse_duration_ms

_STATUS_STYLES = {
    HealthStatus.OK: "green",
    HealthStatus.EXPIRING: "yellow",
    HealthStatus.COOLING_DOWN: "yellow",
    HealthStatus.EXPIRED: "red",
    HealthStatus.MISSING: "red",
    HealthStatus.DISABLED: "red",
}


class TerminalPrompter:
    """:class:`~authprofiles.oauth.interactive.OAuthPrompter` for the terminal."""

    def open_url(self, url: str) -> None:
        info("Opening your browser to sign in. If it does not open, visit:")
        info(url)
        webbrowser.open(url)

    def show_url(self, url: str) -> None:
        info("Open this URL in a browser on any machine and sign in:")
        info(url)

    def prompt_redirect(self, message: str) -> str:
        return typer.prompt(message)


def status_command(
    ctx: typer.Context,
    provider: Optional[str] = typer.Argument(None, help="Only show this provider."),
) -> None:
    """Show the health of every stored profile.

    Example::

        authprofiles status
        authprofiles status anthropic --json
    """
    with exit_on_error():
        manager = get_manager(ctx)
        rows = manager.health_summary()

    if provider:
        wanted = normalize_provider_id(provider)
        rows = [r for r in rows if r.provider == wanted]

    if not rows:
        info("No auth profiles stored.")
        suggest("Add one: authprofiles add-key --provider <provider>")
        return

    output = get_output()
    if output.format == OutputFormat.JSON:
        format_data([r.model_dump(mode="json", exclude_none=True) for r in rows])
        return

    rich = output.format == OutputFormat.RICH
    table_rows = []
    for r in rows:
        status = r.status.value
        if rich:
            style = _STATUS_STYLES[r.status]
            status = f"[{style}]{status}[/{style}]"
        remaining = format_remaining_short(r.remaining_ms) if r.remaining_ms is not None else "-"
        table_rows.append(
            [r.profile_id, r.provider, r.type, status, remaining, r.reason or "-"]
        )
    print_table(
        ["Profile", "Provider", "Type", "Status", "Remaining", "Reason"],
        table_rows,
        title="Auth Profiles",
    )


def add_key_command(
    ctx: typer.Context,
    provider: str = typer.Option(..., "--provider", "-P", help="Provider id, e.g. 'openai'."),
    name: Optional[str] = typer.Option(None, "--name", help="Label for the profile id."),
    profile_id: Optional[str] = typer.Option(
        None, "--profile-id", help="Explicit profile id (overrides --name)."
    ),
    key: Optional[str] = typer.Option(
        None, "--key", help="API key. Prompted for (hidden) when omitted."
    ),
    email: Optional[str] = typer.Option(None, "--email", help="Account email, for display."),
) -> None:
    """Store a static API key.

    Example::

        authprofiles add-key --provider openai --name work
    """
    if not key:
        key = typer.prompt(f"API key for {provider}", hide_input=True)
    with exit_on_error():
        if not key or not key.strip():
            raise InvalidUsageError("API key must not be empty")
        credential = ApiKeyCredential(provider=provider, key=key.strip(), email=email)
        pid = profile_id or build_profile_id(credential.provider, name)
        get_manager(ctx).upsert_profile(pid, credential)
    success(f'Stored API key as "{pid}".')


def paste_token_command(
    ctx: typer.Context,
    provider: str = typer.Option(..., "--provider", "-P", help="Provider id, e.g. 'anthropic'."),
    profile_id: Optional[str] = typer.Option(
        None, "--profile-id", help="Profile id (default: <provider>:manual)."
    ),
    token: Optional[str] = typer.Option(
        None, "--token", help="Token value. Prompted for (hidden) when omitted."
    ),
    expires_in: str = typer.Option(
        "365d", "--expires-in", help="Lifetime such as 365d, 12h or 30m."
    ),
) -> None:
    """Store a pasted setup/bearer token with an expiry.

    Example::

        authprofiles paste-token --provider anthropic --expires-in 30d
    """
    with exit_on_error():
        try:
            lifetime_ms = parse_duration_ms(expires_in, default_unit="d")
        except ValueError as exc:
            raise InvalidUsageError(f"Invalid --expires-in: {exc}") from exc

    if not token:
        token = typer.prompt(f"Paste token for {provider}", hide_input=True)
    with exit_on_error():
        if not token or not token.strip():
            raise InvalidUsageError("Token must not be empty")
        manager = get_manager(ctx)
        expires = manager.now() + lifetime_ms
        credential = TokenCredential(provider=provider, token=token.strip(), expires=expires)
        pid = profile_id or f"{credential.provider}:manual"
        manager.upsert_profile(pid, credential)
    success(f'Stored token as "{pid}" (expires {format_timestamp(expires)}).')


def login_command(
    ctx: typer.Context,
    provider: str = typer.Option(..., "--provider", "-P", help="Provider id to log in to."),
    profile_id: Optional[str] = typer.Option(
        None, "--profile-id", help="Profile id (default: <provider>:<email> or <provider>:default)."
    ),
    remote: Optional[bool] = typer.Option(
        None,
        "--remote/--local",
        help="Paste the redirect URL instead of using a local callback. Autodetected by default.",
    ),
    timeout: float = typer.Option(
        DEFAULT_LOGIN_TIMEOUT_SECONDS, "--timeout", help="Seconds allowed to finish signing in."
    ),
) -> None:
    """Sign in with OAuth and store the resulting credential.

    The provider's endpoints come from ``oauth_providers`` in the
    settings file.

    Example::

        authprofiles login --provider openai-codex
        authprofiles login --provider openai-codex --remote
    """
    with exit_on_error():
        manager = get_manager(ctx)
        profile = manager.login(
            provider,
            TerminalPrompter(),
            profile_id=profile_id,
            remote=remote,
            timeout_seconds=timeout,
        )
    success(f'Logged in; stored "{profile.profile_id}".')


def resolve_command(
    ctx: typer.Context,
    provider: str = typer.Argument(help="Provider to resolve a credential for."),
) -> None:
    """Show which profile would be used for a provider right now.

    Refreshes OAuth credentials that are about to expire, exactly as a
    host application would. The secret is shown masked.

    Example::

        authprofiles resolve anthropic
    """
    with exit_on_error():
        profile = get_manager(ctx).resolve_profile(provider)
    format_data(credential_summary(profile.profile_id, profile.credential))


def refresh_command(
    ctx: typer.Context,
    profile_id: str = typer.Argument(help="OAuth profile id to refresh."),
) -> None:
    """Refresh an OAuth profile now.

    Example::

        authprofiles refresh openai-codex:me@example.com
    """
    with exit_on_error():
        credential = get_manager(ctx).refresh_profile(profile_id)
    success(f'Refreshed "{profile_id}" (expires {format_timestamp(credential.expires)}).')


def remove_command(
    ctx: typer.Context,
    profile_id: str = typer.Argument(help="Profile id to remove."),
) -> None:
    """Remove a profile and every reference to it.

    Asks for confirmation unless ``--force`` is active.

    Example::

        authprofiles remove anthropic:manual
        authprofiles --force remove anthropic:manual
    """
    with exit_on_error():
        manager = get_manager(ctx)
        manager.get_profile(profile_id)

    if not is_forced(ctx):
        confirmed = typer.confirm(f'Remove auth profile "{profile_id}"?')
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    with exit_on_error():
        manager.remove_profile(profile_id)
    success(f'Removed "{profile_id}".')

