"""Error kinds raised by the package management workflows.

Fan-out loops (multi-host, multi-component and related-component) swallow
:class:`NotExistError` and keep going; every other kind propagates to the
caller. Each error carries the CLI exit code it maps to.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class PackageError(RuntimeError):
    """Base class for package management failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class NotExistError(PackageError):
    """No matching version, host, component or archive."""

    exit_code = ExitCode.VALIDATION


class AlreadyExistsError(PackageError):
    """The install directory for the requested version is already present."""

    exit_code = ExitCode.OK


class InvalidArgsError(PackageError):
    """Malformed override, unparseable version or archive/component mismatch."""

    exit_code = ExitCode.VALIDATION


class AuthRequiredError(PackageError):
    """The download endpoint refused access (HTTP 401/403)."""

    exit_code = ExitCode.ENVIRONMENT


class NetworkError(PackageError):
    """Transport-level failure talking to a download backend."""

    exit_code = ExitCode.ENVIRONMENT


class DownloadError(NetworkError):
    """The download backend answered with an unusable response."""


class IntegrityViolation(PackageError):
    """An archive entry would escape or corrupt the version tree."""


class HostError(PackageError):
    """Raised when a host target cannot complete a filesystem or process call."""

    exit_code = ExitCode.ENVIRONMENT


__all__ = [
    "AlreadyExistsError",
    "AuthRequiredError",
    "DownloadError",
    "HostError",
    "IntegrityViolation",
    "InvalidArgsError",
    "NetworkError",
    "NotExistError",
    "PackageError",
]
