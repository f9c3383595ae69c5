"""Installation of static resources embedded in server plugins.

Plugin resources (typically zip bundles of analyzer assemblies) are cached per
plugin key and version under ``<cache_root>/resources/<n>/``.  The mapping
from ``key/version`` to the short directory name ``n`` lives in a small
``index.json`` shared by every build process on the machine.  Reading and
updating it is a read-modify-write guarded by a cross-process
:class:`filelock.FileLock`; the lock is released before any network I/O.

A directory that already contains files is a cache hit.  Otherwise the
resource is downloaded and unpacked into a private staging directory beside
it, and the staging directory is renamed into place only once it is complete.
An aborted installation leaves nothing behind that a later run could mistake
for a cache hit.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import httpx
from filelock import FileLock

from .errors import ArchiveFormatError, ServerError
from .filesystem import FileSystem, LocalFileSystem
from .models import Plugin
from .server import ServerClient
from .telemetry import Telemetry, TelemetryKeys, TelemetrySink
from .unpacking import unpacker_for

__all__ = ["ResourceIndex", "PluginResourceInstaller"]

_INDEX_FILE = "index.json"
_LOCK_SUFFIX = ".lock"
_DEFAULT_LOCK_TIMEOUT = 30.0


class ResourceIndex:
    """Cross-process index assigning a stable directory to each plugin version."""

    def __init__(
        self,
        index_root: Path,
        *,
        lock_timeout: float = _DEFAULT_LOCK_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.index_root = Path(index_root)
        self.index_path = self.index_root / _INDEX_FILE
        self.lock_timeout = lock_timeout
        self.logger = logger or logging.getLogger(__name__)

    def directory_for(self, plugin: Plugin) -> Path:
        """Return the directory reserved for ``plugin``, assigning one if needed.

        Args:
            plugin: Plugin whose ``key/version`` identifies the entry.

        Returns:
            ``<index_root>/<n>``.  The directory itself is not created.

        Raises:
            filelock.Timeout: If the index lock is not acquired in time.
        """

        self.index_root.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.index_path) + _LOCK_SUFFIX, timeout=self.lock_timeout)
        with lock:
            entries = self._read()
            name = entries.get(plugin.index_key)
            if name is None:
                name = self._next_name(entries)
                entries[plugin.index_key] = name
                self._write(entries)
                self.logger.debug(
                    "assigned resource directory %s to %s",
                    name,
                    plugin.index_key,
                    extra={"stage": "resources"},
                )
        return self.index_root / name

    def _read(self) -> Dict[str, str]:
        if not self.index_path.exists():
            return {}
        try:
            payload = json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            self.logger.warning(
                "resource index %s is corrupt, rebuilding: %s",
                self.index_path,
                exc,
                extra={"stage": "resources"},
            )
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def _write(self, entries: Dict[str, str]) -> None:
        tmp = self.index_path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(entries, handle, indent=2, sort_keys=True)
        tmp.replace(self.index_path)

    def _next_name(self, entries: Dict[str, str]) -> str:
        taken = set(entries.values())
        candidate = 0
        # Skip names already on disk so a rebuilt index never reuses a populated directory.
        while str(candidate) in taken or (self.index_root / str(candidate)).exists():
            candidate += 1
        return str(candidate)


class PluginResourceInstaller:
    """Fetch plugin resources into the local cache and return their files."""

    def __init__(
        self,
        server: ServerClient,
        cache_root: Path,
        *,
        fs: Optional[FileSystem] = None,
        logger: Optional[logging.Logger] = None,
        telemetry: Optional[TelemetrySink] = None,
        index: Optional[ResourceIndex] = None,
    ) -> None:
        self.server = server
        self.resources_root = Path(cache_root) / "resources"
        self.fs = fs or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)
        self.telemetry = telemetry if telemetry is not None else Telemetry()
        self.index = index or ResourceIndex(self.resources_root, logger=self.logger)

    async def install(self, plugins: Iterable[Plugin]) -> List[Path]:
        """Install resources for ``plugins`` and return the non-archive files.

        Failed downloads and corrupt archives are logged, counted under
        ``provisioning.resources.failed`` and skipped.

        Args:
            plugins: Plugins whose embedded resource should be available locally.

        Returns:
            Sorted paths of every installed file, archives excluded.

        Raises:
            UnsafeArchiveEntryError: If a resource archive tries to escape its
                directory.  Nothing from that archive is kept.
        """

        plugins = list(plugins)
        if not plugins:
            self.logger.info("no plugins specified, nothing to install")
            return []

        self.logger.info("installing resources for %d plugins", len(plugins))
        files: Set[Path] = set()
        hits = downloaded = failed = 0
        for plugin in plugins:
            directory = self.index.directory_for(plugin)
            cached = self._cached_files(directory)
            if cached:
                self.logger.debug(
                    "resource cache hit for %s at %s",
                    plugin.index_key,
                    directory,
                    extra={"stage": "resources"},
                )
                hits += 1
                files.update(cached)
                continue

            self.logger.debug(
                "resource cache miss for %s", plugin.index_key, extra={"stage": "resources"}
            )
            if await self._fetch(plugin, directory):
                downloaded += 1
                files.update(self._cached_files(directory))
            else:
                failed += 1

        self.telemetry.add(TelemetryKeys.RESOURCES_CACHE_HITS, str(hits))
        self.telemetry.add(TelemetryKeys.RESOURCES_DOWNLOADED, str(downloaded))
        self.telemetry.add(TelemetryKeys.RESOURCES_FAILED, str(failed))
        return sorted(files)

    def _cached_files(self, directory: Path) -> List[Path]:
        return [
            path
            for path in self.fs.iter_files(directory)
            if not path.name.startswith(".") and unpacker_for(path) is None
        ]

    async def _fetch(self, plugin: Plugin, directory: Path) -> bool:
        self.fs.mkdir(self.resources_root, parents=True)
        staging = self.fs.make_temp_dir(self.resources_root, prefix=f".{directory.name}.")
        try:
            archive = staging / plugin.resource_name
            try:
                with self.fs.open_write(archive) as sink:
                    async for chunk in self.server.download_plugin_resource(plugin):
                        await asyncio.to_thread(sink.write, chunk)
            except (httpx.HTTPError, ServerError, OSError) as exc:
                self._warn_failed(plugin, "could not be downloaded", exc)
                return False

            unpacker = unpacker_for(archive, fs=self.fs, logger=self.logger)
            if unpacker is not None:
                self.logger.debug(
                    "extracting %s into %s", archive, staging, extra={"stage": "resources"}
                )
                try:
                    with self.fs.open_read(archive) as stream:
                        await asyncio.to_thread(unpacker.unpack, stream, staging)
                except ArchiveFormatError as exc:
                    self._warn_failed(plugin, "is not a valid archive", exc)
                    return False
            return self._promote(staging, directory)
        finally:
            self.fs.remove_tree(staging)

    def _promote(self, staging: Path, directory: Path) -> bool:
        """Rename the fully prepared ``staging`` directory to ``directory``."""

        # Leftovers without usable files (an empty directory, a stray archive) are replaced.
        if self.fs.is_dir(directory) and not self._cached_files(directory):
            self.fs.remove_tree(directory)
        try:
            self.fs.replace(staging, directory)
        except OSError as exc:
            if self._cached_files(directory):
                self.logger.debug(
                    "resource directory %s was populated concurrently, keeping it",
                    directory,
                    extra={"stage": "resources"},
                )
                return True
            self.logger.warning(
                "unable to move resources into %s: %s",
                directory,
                exc,
                extra={"stage": "resources"},
            )
            return False
        return True

    def _warn_failed(self, plugin: Plugin, what: str, exc: BaseException) -> None:
        self.logger.warning(
            "resource %s of plugin %s (%s) %s: %s",
            plugin.resource_name,
            plugin.key,
            plugin.version,
            what,
            exc,
            extra={"stage": "resources"},
        )
