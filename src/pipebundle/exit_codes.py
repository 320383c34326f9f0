"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~pipebundle.exceptions.BundleError` subclass.
The same codes are used by the host CLI and by the installer embedded in a
hybrid ``.run`` file, so shell wrappers and CI jobs can tell failure
classes apart without parsing stderr.

Example::

    $ sh pipelinewise-installer.run /opt/pipelinewise
    $ echo $?
    3   # EXIT_PREREQUISITE_FAILURE -- glibc too old or disk full
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or an unusable destination."""

EXIT_PREREQUISITE_FAILURE = 3
"""The host failed a pre-flight gate (loader ABI version, disk space, interpreter)."""

EXIT_EXTRACTION_FAILURE = 4
"""The archive boundary was not found or the payload could not be extracted."""

EXIT_COMPATIBILITY_FAILURE = 5
"""A bundled native dependency reports a feature version below the required minimum."""

EXIT_DISCOVERY_FAILURE = 6
"""A plugin slot does not resolve to an executable."""

EXIT_BUILD_FAILURE = 7
"""A packaging job or the archive builder failed."""

EXIT_VERIFY_FAILURE = 8
"""The verification suite reported at least one failed check."""

EXIT_CANCELLED = 9
"""The operator declined a confirmation; nothing was changed."""
