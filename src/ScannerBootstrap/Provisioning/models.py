"""Value types describing provisioned artifacts and resolution outcomes.

``FileDescriptor``, ``ArchiveDescriptor``, ``EngineMetadata`` and ``JreMetadata``
identify what to fetch; the outcome classes form two closed unions
(``CacheResult`` and ``DownloadResult``) that every consumer matches
exhaustively.  Unknown members reaching a terminal
``match`` raise :class:`~ScannerBootstrap.Provisioning.errors.UnsupportedOutcomeError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any, Mapping, Optional, Union

from .checksums import normalize_digest
from .errors import ConfigError

__all__ = [
    "FileDescriptor",
    "EngineMetadata",
    "ArchiveDescriptor",
    "JreMetadata",
    "Plugin",
    "CacheHit",
    "CacheMiss",
    "CacheError",
    "CacheResult",
    "DownloadSuccess",
    "DownloadError",
    "DownloadResult",
]


def _validate_filename(filename: object, *, context: str) -> str:
    if not isinstance(filename, str) or not filename.strip():
        raise ConfigError(f"{context}: filename must be a non-empty string")
    candidate = filename.strip()
    if candidate in {".", ".."}:
        raise ConfigError(f"{context}: filename {candidate!r} is not a file name")
    # Reject anything that is not a bare name on either path flavour.
    if PurePosixPath(candidate).name != candidate or PureWindowsPath(candidate).name != candidate:
        raise ConfigError(f"{context}: filename {candidate!r} must not contain path separators")
    return candidate


@dataclass(slots=True, frozen=True)
class FileDescriptor:
    """Required artifact identified by file name and SHA-256 digest."""

    filename: str
    sha256: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "filename", _validate_filename(self.filename, context="file descriptor")
        )
        object.__setattr__(self, "sha256", normalize_digest(self.sha256, context=self.filename))


@dataclass(slots=True, frozen=True)
class EngineMetadata:
    """Engine artifact metadata published by the server.

    ``download_url`` is ``None`` when the server streams the bytes itself
    instead of redirecting to a direct download location.
    """

    filename: str
    sha256: str
    download_url: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "filename", _validate_filename(self.filename, context="engine metadata")
        )
        object.__setattr__(self, "sha256", normalize_digest(self.sha256, context=self.filename))
        if self.download_url is not None and not str(self.download_url).strip():
            object.__setattr__(self, "download_url", None)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EngineMetadata":
        """Build metadata from the server JSON document."""

        if not isinstance(payload, Mapping):
            raise ConfigError("engine metadata: payload must be a JSON object")
        download_url = payload.get("downloadUrl")
        if download_url is not None and not isinstance(download_url, str):
            raise ConfigError("engine metadata: downloadUrl must be a string")
        return cls(
            filename=payload.get("filename"),  # type: ignore[arg-type]
            sha256=payload.get("sha256"),  # type: ignore[arg-type]
            download_url=download_url,
        )

    def to_descriptor(self) -> FileDescriptor:
        """Return the cache descriptor (name and digest) of the engine JAR.

        Returns:
            A :class:`FileDescriptor`; ``download_url`` only matters to the server client.
        """

        return FileDescriptor(filename=self.filename, sha256=self.sha256)


def _validate_entry_point(value: object, *, context: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{context}: entry point must be a non-empty relative path")
    candidate = value.strip().replace("\\", "/")
    path = PurePosixPath(candidate)
    if path.is_absolute() or PureWindowsPath(value.strip()).drive or ".." in path.parts:
        raise ConfigError(f"{context}: entry point {value!r} must stay inside the archive")
    return candidate


@dataclass(slots=True, frozen=True)
class ArchiveDescriptor:
    """Archive artifact that is cached both as a file and as an extracted tree.

    ``entry_point`` is the path, relative to the extraction root, of the file
    that proves the extraction is usable (for a JRE, the ``java`` executable).
    """

    filename: str
    sha256: str
    entry_point: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "filename", _validate_filename(self.filename, context="archive descriptor")
        )
        object.__setattr__(self, "sha256", normalize_digest(self.sha256, context=self.filename))
        object.__setattr__(
            self,
            "entry_point",
            _validate_entry_point(self.entry_point, context=self.filename),
        )

    def to_file_descriptor(self) -> FileDescriptor:
        """Return the descriptor of the archive file itself."""

        return FileDescriptor(filename=self.filename, sha256=self.sha256)


@dataclass(slots=True, frozen=True)
class JreMetadata:
    """Java runtime published by the server for one operating system and architecture."""

    id: str
    filename: str
    sha256: str
    java_path: str
    download_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ConfigError("jre metadata: id must be a non-empty string")
        object.__setattr__(
            self, "filename", _validate_filename(self.filename, context="jre metadata")
        )
        object.__setattr__(self, "sha256", normalize_digest(self.sha256, context=self.filename))
        object.__setattr__(
            self, "java_path", _validate_entry_point(self.java_path, context=self.filename)
        )
        if self.download_url is not None and not str(self.download_url).strip():
            object.__setattr__(self, "download_url", None)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "JreMetadata":
        """Build metadata from one element of the server's JRE list.

        Args:
            payload: JSON object with ``id``, ``filename``, ``sha256``,
                ``javaPath`` and an optional ``downloadUrl``.

        Returns:
            Validated metadata.

        Raises:
            ConfigError: If a field is missing or malformed.
        """

        if not isinstance(payload, Mapping):
            raise ConfigError("jre metadata: payload must be a JSON object")
        download_url = payload.get("downloadUrl")
        if download_url is not None and not isinstance(download_url, str):
            raise ConfigError("jre metadata: downloadUrl must be a string")
        return cls(
            id=payload.get("id"),  # type: ignore[arg-type]
            filename=payload.get("filename"),  # type: ignore[arg-type]
            sha256=payload.get("sha256"),  # type: ignore[arg-type]
            java_path=payload.get("javaPath"),  # type: ignore[arg-type]
            download_url=download_url,
        )

    def to_descriptor(self) -> ArchiveDescriptor:
        return ArchiveDescriptor(
            filename=self.filename, sha256=self.sha256, entry_point=self.java_path
        )


@dataclass(slots=True, frozen=True)
class Plugin:
    """Server plugin exposing an embedded static resource (usually a zip)."""

    key: str
    version: str
    resource_name: str

    def __post_init__(self) -> None:
        if not self.key or not self.version:
            raise ConfigError("plugin: key and version are required")
        object.__setattr__(
            self,
            "resource_name",
            _validate_filename(self.resource_name, context=f"plugin {self.key}"),
        )

    @property
    def index_key(self) -> str:
        return f"{self.key}/{self.version}"


@dataclass(slots=True, frozen=True)
class CacheHit:
    file_path: str


@dataclass(slots=True, frozen=True)
class CacheMiss:
    pass


@dataclass(slots=True, frozen=True)
class CacheError:
    message: str


@dataclass(slots=True, frozen=True)
class DownloadSuccess:
    file_path: str


@dataclass(slots=True, frozen=True)
class DownloadError:
    message: str


CacheResult = Union[CacheHit, CacheMiss, CacheError]
DownloadResult = Union[DownloadSuccess, DownloadError]
