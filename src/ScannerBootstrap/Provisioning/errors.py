"""Exception hierarchy shared across engine resolution, caching, and unpacking.

Resolution produces *outcomes* (cache hit/miss/error, download success/error)
as plain values; the exceptions below are reserved for conditions a caller
must not mistake for an ordinary outcome: invalid inputs, HTTP failures from
the server adapter, archives that try to escape their destination, and
programming errors where an outcome of an unknown type reaches a terminal
``match``.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ProvisioningError",
    "ConfigError",
    "ServerError",
    "UnsafeArchiveEntryError",
    "ArchiveFormatError",
    "UnsupportedOutcomeError",
]


class ProvisioningError(RuntimeError):
    """Base exception for artifact provisioning failures."""


class ConfigError(ProvisioningError):
    """Raised when settings, descriptors, or server metadata are invalid."""


class ServerError(ProvisioningError):
    """Raised when the remote server answers with a non-success status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnsafeArchiveEntryError(ProvisioningError):
    """Raised when an archive entry would be written outside its destination."""

    def __init__(self, entry_name: str, destination: object) -> None:
        super().__init__(f"Unsafe archive entry {entry_name!r} escapes {destination}")
        self.entry_name = entry_name
        self.destination = destination


class ArchiveFormatError(ProvisioningError):
    """Raised when an archive is truncated, corrupt, or not of its declared format."""

    def __init__(self, archive_format: str, reason: object) -> None:
        super().__init__(f"Corrupt {archive_format} archive: {reason}")
        self.archive_format = archive_format
        self.reason = reason


class UnsupportedOutcomeError(ProvisioningError, NotImplementedError):
    """Raised when an outcome value outside its declared union is consumed."""

    def __init__(self, outcome: object) -> None:
        super().__init__(f"Unsupported outcome type: {type(outcome).__name__}")
        self.outcome = outcome
