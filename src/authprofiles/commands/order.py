"""Order commands -- view and change a provider's profile preference order.

The first profile in the order is tried first by failover. When a provider
has no order, the last profile that succeeded is used.
"""

from __future__ import annotations

from typing import Optional

import typer

from authprofiles.commands.common import exit_on_error, get_manager
from authprofiles.output import format_data, info, success, suggest

order_app = typer.Typer(no_args_is_help=True)


@order_app.command("get")
def order_get(
    ctx: typer.Context,
    provider: str = typer.Argument(help="Provider id."),
) -> None:
    """Print the preference order for a provider, one profile id per line.

    Example::

        authprofiles order get anthropic
    """
    with exit_on_error():
        ids = get_manager(ctx).get_order(provider)
    if not ids:
        info(f'No explicit order for "{provider}".')
        suggest(f"Set one: authprofiles order set {provider} <profile-id> ...")
        return
    format_data(ids)


@order_app.command("set")
def order_set(
    ctx: typer.Context,
    provider: str = typer.Argument(help="Provider id."),
    profile_ids: Optional[list[str]] = typer.Argument(
        None, help="Profile ids, most preferred first. Omit to clear the order."
    ),
) -> None:
    """Replace the preference order for a provider.

    Every id must already exist and belong to the provider.

    Example::

        authprofiles order set anthropic anthropic:work anthropic:personal
        authprofiles order set anthropic
    """
    with exit_on_error():
        ids = get_manager(ctx).set_order(provider, list(profile_ids or []))
    if ids:
        success(f'Order for "{provider}": {", ".join(ids)}')
    else:
        success(f'Cleared the order for "{provider}".')
