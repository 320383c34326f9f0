"""Built-in CLI sub-commands for pipebundle.

This package groups the Typer sub-command modules that form the CLI's
command tree:

* :mod:`~pipebundle.commands.build` -- run packaging jobs and write
  installers (``bundle``, ``installer``, ``release``).
* :mod:`~pipebundle.commands.install` -- install a hybrid installer file
  from a host that has pipebundle available.
* :mod:`~pipebundle.commands.setup` -- run first-run discovery setup.
* :mod:`~pipebundle.commands.verify` -- run the Verification Suite.
* :mod:`~pipebundle.commands.inspect` -- look at manifests, slots and
  compatibility records.

Each module either exports a :class:`typer.Typer` sub-application (for
multi-command groups like ``build`` and ``inspect``) or a plain callback
function registered directly on the root app (for single commands like
``verify``).
"""
