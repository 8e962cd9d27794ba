"""Built-in CLI sub-commands for authprofiles.

* :mod:`~authprofiles.commands.profiles` -- ``status``, ``add-key``,
  ``paste-token``, ``login``, ``resolve``, ``refresh``, ``remove``.
* :mod:`~authprofiles.commands.order` -- the ``order`` group.
* :mod:`~authprofiles.commands.doctor` -- health report and store repair.

Each module either exports a :class:`typer.Typer` sub-application (for
multi-command groups like ``order``) or plain callback functions
registered directly on the root app.
"""
