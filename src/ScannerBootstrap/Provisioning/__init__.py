"""Public API for scanner artifact provisioning.

The facade exposes the pieces a build orchestrator needs to obtain the
analysis engine, a Java runtime and plugin resources: the engine and JRE
resolvers, the content-addressed file cache with its extracted-archive
companion, the cached downloader, archive unpackers, and the server client
contract with its HTTPX adapter.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .archive_cache import ArchiveCache
from .cache import FileCache
from .checksums import ChecksumProvider, Sha256ChecksumProvider
from .downloader import CachedDownloader
from .errors import (
    ArchiveFormatError,
    ConfigError,
    ProvisioningError,
    ServerError,
    UnsafeArchiveEntryError,
    UnsupportedOutcomeError,
)
from .filesystem import FileSystem, LocalFileSystem
from .models import (
    ArchiveDescriptor,
    CacheError,
    CacheHit,
    CacheMiss,
    DownloadError,
    DownloadSuccess,
    EngineMetadata,
    FileDescriptor,
    JreMetadata,
    Plugin,
)
from .plugin_resources import PluginResourceInstaller, ResourceIndex
from .resolver import EngineResolver, JreResolver
from .server import HttpServerClient, OfflineServerClient, ServerClient
from .settings import ProvisioningSettings, get_settings
from .telemetry import Telemetry, TelemetryKeys, TelemetryValues
from .unpacking import TarGzUnpacker, ZipUnpacker, unpack_file, unpacker_for

__all__ = [
    "__version__",
    "ArchiveCache",
    "ArchiveDescriptor",
    "ArchiveFormatError",
    "CacheError",
    "CacheHit",
    "CacheMiss",
    "CachedDownloader",
    "ChecksumProvider",
    "ConfigError",
    "DownloadError",
    "DownloadSuccess",
    "EngineMetadata",
    "EngineResolver",
    "FileCache",
    "FileDescriptor",
    "FileSystem",
    "HttpServerClient",
    "JreMetadata",
    "JreResolver",
    "LocalFileSystem",
    "OfflineServerClient",
    "Plugin",
    "PluginResourceInstaller",
    "ProvisioningError",
    "ProvisioningSettings",
    "ResourceIndex",
    "ServerClient",
    "ServerError",
    "Sha256ChecksumProvider",
    "TarGzUnpacker",
    "Telemetry",
    "TelemetryKeys",
    "TelemetryValues",
    "UnsafeArchiveEntryError",
    "UnsupportedOutcomeError",
    "ZipUnpacker",
    "get_settings",
    "unpack_file",
    "unpacker_for",
]
