"""Exception hierarchy for authprofiles.

All exceptions inherit from :class:`AuthProfilesError`, which carries an
``exit_code`` attribute mapped to a constant from
:mod:`authprofiles.exit_codes`. The top-level error handler in
:func:`authprofiles.app.main` catches ``AuthProfilesError`` and exits with
the appropriate code, while unexpected exceptions produce a crash log and
exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    AuthProfilesError        (exit 1)
    +-- InvalidUsageError    (exit 2)
    +-- ConfigError          (exit 1)
    +-- ProfileNotFoundError (exit 4)
    +-- StoreCorrupt         (exit 5)
    +-- LockTimeout          (exit 75)
    +-- NoUsableProfile      (exit 3)
    +-- RefreshFailed        (exit 3)
    +-- AuthTimeout          (exit 3)
    +-- InteractiveAuthError (exit 3)

:class:`NoUsableProfile` and :class:`RefreshFailed` carry structured data
so that callers can render actionable diagnostics instead of a bare
"auth failed".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from authprofiles.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_STORE_CORRUPT,
    EXIT_TEMPFAIL,
)

if TYPE_CHECKING:
    from authprofiles.models import CandidateDiagnostic


class AuthProfilesError(Exception):
    """Base exception for all authprofiles errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`authprofiles.exit_codes`.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(AuthProfilesError):
    """Raised for invalid CLI arguments or malformed input values."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(AuthProfilesError):
    """Raised for configuration problems (invalid settings file, bad overrides)."""

    exit_code = EXIT_GENERIC_FAILURE


class ProfileNotFoundError(AuthProfilesError):
    """Raised when an operation names a profile id that is not in the store."""

    exit_code = EXIT_NOT_FOUND

    def __init__(self, profile_id: str):
        super().__init__(f"Auth profile '{profile_id}' not found")
        self.profile_id = profile_id


class StoreCorrupt(AuthProfilesError):
    """Raised when the store file exists but cannot be parsed or validated.

    The file is never overwritten or reset when this is raised; a human has
    to inspect it.
    """

    exit_code = EXIT_STORE_CORRUPT

    def __init__(self, path: str, detail: str):
        super().__init__(
            f"Auth profile store at {path} is corrupt and was left untouched: {detail}"
        )
        self.path = path
        self.detail = detail


class LockTimeout(AuthProfilesError):
    """Raised when the cross-process store lock is not acquired in time.

    Retryable: callers should back off and retry the whole operation.
    """

    exit_code = EXIT_TEMPFAIL

    def __init__(self, lock_path: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout:g}s waiting for store lock {lock_path}"
        )
        self.lock_path = lock_path
        self.timeout = timeout


class NoUsableProfile(AuthProfilesError):
    """Raised when no profile for a provider can currently be used.

    Attributes:
        provider: The normalized provider id that was resolved.
        candidates: One :class:`~authprofiles.models.CandidateDiagnostic`
            per profile considered, in preference order.
    """

    exit_code = EXIT_AUTH_FAILURE

    def __init__(
        self,
        provider: str,
        candidates: Optional[list[CandidateDiagnostic]] = None,
    ):
        self.provider = provider
        self.candidates = list(candidates or [])
        if self.candidates:
            detail = "; ".join(c.describe() for c in self.candidates)
            message = f"No usable auth profile for '{provider}': {detail}"
        else:
            message = f"No auth profiles configured for '{provider}'"
        super().__init__(message)


class RefreshFailed(AuthProfilesError):
    """Raised when an OAuth credential could not be refreshed.

    Not fatal: the failover selector moves on to the next candidate, and
    interactive callers can fall back to a fresh login.

    Attributes:
        profile_id: The profile whose refresh failed, when known.
        retryable: ``True`` for transport errors and 5xx responses,
            ``False`` when the refresh token was rejected.
    """

    exit_code = EXIT_AUTH_FAILURE

    def __init__(
        self,
        message: str,
        profile_id: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.profile_id = profile_id
        self.retryable = retryable


class AuthTimeout(AuthProfilesError):
    """Raised when an interactive OAuth flow is not completed in time.

    The store is left unchanged.
    """

    exit_code = EXIT_AUTH_FAILURE


class InteractiveAuthError(AuthProfilesError):
    """Raised when an interactive OAuth flow fails (denied, bad state, bad code)."""

    exit_code = EXIT_AUTH_FAILURE
