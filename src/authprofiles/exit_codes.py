"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~authprofiles.exceptions.AuthProfilesError` subclass.
Shell wrappers and service supervisors can inspect the exit code to decide
whether to retry (``EXIT_TEMPFAIL``) or escalate without parsing stderr.

Example::

    $ authprofiles resolve anthropic
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- no usable profile for the provider
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_AUTH_FAILURE = 3
"""No usable credential, a failed refresh, or an abandoned interactive login."""

EXIT_NOT_FOUND = 4
"""The requested profile does not exist in the store."""

EXIT_STORE_CORRUPT = 5
"""The store file could not be parsed and needs manual inspection."""

EXIT_TEMPFAIL = 75
"""A temporary failure (lock contention); the caller should retry (``EX_TEMPFAIL``)."""
