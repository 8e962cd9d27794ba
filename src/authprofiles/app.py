"""Typer application and CLI entry point for authprofiles.

This module wires the top-level Typer application, registers the built-in
sub-commands and configures logging and output from the global flags.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
Unhandled exceptions are written to a crash log under the data directory.

See Also:
    :mod:`authprofiles.config`: Settings and store location resolution.
    :mod:`authprofiles.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from authprofiles import __version__
from authprofiles.commands.doctor import doctor_command
from authprofiles.commands.order import order_app
from authprofiles.commands.profiles import (
    add_key_command,
    login_command,
    paste_token_command,
    refresh_command,
    remove_command,
    resolve_command,
    status_command,
)
from authprofiles.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="authprofiles",
    help="Manage auth profiles with failover across multiple credentials per provider.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

app.command("status")(status_command)
app.command("add-key")(add_key_command)
app.command("paste-token")(paste_token_command)
app.command("login")(login_command)
app.command("resolve")(resolve_command)
app.command("refresh")(refresh_command)
app.command("remove")(remove_command)
app.command("doctor")(doctor_command)
app.add_typer(order_app, name="order", help="Provider preference order.")


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"authprofiles {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Route library log records to stderr through Rich.

    ``--verbose`` shows DEBUG records; otherwise only warnings and errors.
    """
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_time=verbose,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    root = logging.getLogger("authprofiles")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    store: Optional[str] = typer.Option(
        None, "--store", help="Path to the auth profile store file."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip confirmations."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~authprofiles.output.OutputManager` and
    logging from CLI flags, and stores shared options (``store``,
    ``force``, ``verbose``) in ``ctx.obj`` for the sub-commands.
    """
    from authprofiles.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    set_output(output)
    configure_logging(verbose=verbose, no_color=no_color)

    ctx.ensure_object(dict)
    ctx.obj["store"] = store
    ctx.obj["force"] = force
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from authprofiles.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``authprofiles`` console script.

    Unhandled :class:`~authprofiles.exceptions.AuthProfilesError` instances
    cause a clean exit with the error's ``exit_code``. All other exceptions
    produce a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from authprofiles.exceptions import AuthProfilesError
        from authprofiles.output import error

        if isinstance(exc, AuthProfilesError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
