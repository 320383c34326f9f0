"""Exception hierarchy for pipebundle.

All exceptions inherit from :class:`BundleError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`pipebundle.exit_codes`.
The host entry point (:func:`pipebundle.app.main`) and the installer entry
point (:func:`pipebundle.installer.main`) both catch ``BundleError`` and exit
with the matching code.

Subclass hierarchy::

    BundleError (exit 1)
    +-- InvalidUsageError     (exit 2)
    +-- PrerequisiteError     (exit 3)
    +-- ExtractionError       (exit 4)
    +-- CompatibilityFailure  (exit 5)
    +-- DiscoveryFailure      (exit 6)
    +-- BuildError            (exit 7)
    +-- ConfigError           (exit 1)
    +-- InstallCancelled      (exit 9)

:class:`SetupWarning` and :class:`CompatibilityUnknown` are *not* errors.
They are ``Warning`` subclasses that setup and verification collect and
report; they never abort a run.
"""

from __future__ import annotations

from pipebundle.exit_codes import (
    EXIT_BUILD_FAILURE,
    EXIT_CANCELLED,
    EXIT_COMPATIBILITY_FAILURE,
    EXIT_DISCOVERY_FAILURE,
    EXIT_EXTRACTION_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_PREREQUISITE_FAILURE,
)


class BundleError(Exception):
    """Base exception for all pipebundle errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`pipebundle.exit_codes`.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(BundleError):
    """Raised for invalid arguments or an unusable install destination."""

    exit_code = EXIT_INVALID_USAGE


class PrerequisiteError(BundleError):
    """Raised when the host fails a pre-flight gate (loader version, disk space)."""

    exit_code = EXIT_PREREQUISITE_FAILURE


class ExtractionError(BundleError):
    """Raised when the payload boundary is missing or extraction fails."""

    exit_code = EXIT_EXTRACTION_FAILURE


class CompatibilityFailure(BundleError):
    """Raised when an observed native-dependency version is below the minimum."""

    exit_code = EXIT_COMPATIBILITY_FAILURE


class DiscoveryFailure(BundleError):
    """Raised when a plugin slot does not resolve to an executable file."""

    exit_code = EXIT_DISCOVERY_FAILURE


class BuildError(BundleError):
    """Raised when a packaging job fails or a bundle cannot be archived."""

    exit_code = EXIT_BUILD_FAILURE


class ConfigError(BundleError):
    """Raised for configuration problems (missing files, invalid JSON, bad manifests)."""

    exit_code = EXIT_GENERIC_FAILURE


class InstallCancelled(BundleError):
    """Raised when the operator declines a confirmation prompt."""

    exit_code = EXIT_CANCELLED


class SetupWarning(Warning):
    """A slot or config record that could not be created during setup.

    Collected by :func:`pipebundle.slots.setup_slots`; the real failure is
    deferred until the affected plugin is first resolved.

    Args:
        subject: The plugin or file the warning is about.
        message: What went wrong.
    """

    def __init__(self, subject: str, message: str):
        super().__init__(f"{subject}: {message}")
        self.subject = subject
        self.message = message


class CompatibilityUnknown(Warning):
    """A compatibility probe that could not produce a usable version token."""
