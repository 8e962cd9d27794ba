"""authprofiles -- durable multi-credential auth profiles with failover.

A host application keeps several credentials (API keys, pasted tokens,
OAuth grants) per provider in one JSON store shared by every process on
the machine. :class:`~authprofiles.manager.AuthProfileManager` resolves the
best usable credential for a provider, refreshes OAuth tokens before they
expire, and takes credentials out of rotation after billing or transient
failures.

Typical use::

    from authprofiles.manager import create_default_manager

    manager = create_default_manager()
    profile = manager.resolve_profile("anthropic")

Modules:
    app: Typer application and CLI entry point.
    manager: Consumer API facade.
    models: Pydantic models shared across the package.
    config: XDG-aware settings and store location.
    store: Store file format and cross-process locking.
    health: Health classification of profiles.
    cooldown: Billing backoff and transient circuit breaker.
    selector: Failover selection.
    oauth: Token refresh and interactive login.
    migration: Idempotent repair passes.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.1.0"
