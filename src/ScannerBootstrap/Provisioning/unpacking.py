# === NAVMAP v1 ===
# {
#   "module": "ScannerBootstrap.Provisioning.unpacking",
#   "purpose": "Safe extraction of zip and gzip-compressed tar archives",
#   "sections": [
#     {"id": "guards", "name": "Path Guards & Entry Writers", "anchor": "GRD", "kind": "helpers"},
#     {"id": "zip", "name": "Zip Unpacker", "anchor": "ZIP", "kind": "api"},
#     {"id": "targz", "name": "Tar.gz Unpacker", "anchor": "TGZ", "kind": "api"},
#     {"id": "dispatch", "name": "Format Dispatch", "anchor": "DSP", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Archive unpackers used for plugin resources and engine bundles.

Every entry is resolved against the canonical destination directory before
anything is written.  An entry that would land outside the destination raises
:class:`~ScannerBootstrap.Provisioning.errors.UnsafeArchiveEntryError` and
aborts the whole extraction.  Symbolic and hard links are never materialised,
directories are created idempotently, and file permission bits are restored
on a best-effort basis: a failed ``chmod`` is logged and extraction goes on.
Archives that cannot be decoded raise
:class:`~ScannerBootstrap.Provisioning.errors.ArchiveFormatError`.

:func:`unpacker_for` selects an implementation from the archive's file name
(case-insensitive) and returns ``None`` for formats it does not handle.
"""

from __future__ import annotations

import logging
import shutil
import stat
import tarfile
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, List, Optional, Protocol

from .errors import ArchiveFormatError, ConfigError, UnsafeArchiveEntryError
from .filesystem import FileSystem, LocalFileSystem

__all__ = [
    "Unpacker",
    "ZipUnpacker",
    "TarGzUnpacker",
    "unpacker_for",
    "unpack_file",
]

_UNIX_CREATE_SYSTEM = 3

_DECODER_ERRORS = (zipfile.BadZipFile, tarfile.TarError, EOFError, zlib.error)


class Unpacker(Protocol):
    """Extract an archive stream into a destination directory."""

    def unpack(self, stream: BinaryIO, destination: Path) -> List[Path]:
        ...


class _ArchiveUnpacker:
    """Shared path guard and entry writers for concrete unpackers.

    Subclasses implement ``_extract``; :meth:`unpack` prepares the destination
    and turns decoder failures into
    :class:`~ScannerBootstrap.Provisioning.errors.ArchiveFormatError`.
    """

    format_name = "archive"

    def __init__(
        self,
        *,
        fs: Optional[FileSystem] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.fs = fs or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)

    def unpack(self, stream: BinaryIO, destination: Path) -> List[Path]:
        """Extract ``stream`` into ``destination`` and return the written files.

        Args:
            stream: Open binary stream positioned at the start of the archive.
            destination: Directory receiving the entries; created if missing.

        Returns:
            Resolved paths of the regular files written, in archive order.

        Raises:
            UnsafeArchiveEntryError: If an entry resolves outside ``destination``.
            ArchiveFormatError: If the archive cannot be decoded.
        """

        root = self._prepare_destination(destination)
        try:
            extracted = self._extract(stream, root)
        except _DECODER_ERRORS as exc:
            self.logger.error(
                "corrupt %s archive: %s",
                self.format_name,
                exc,
                extra={"stage": "extract", "destination": str(root)},
            )
            raise ArchiveFormatError(self.format_name, exc) from exc
        self.logger.debug(
            "extracted %d files into %s",
            len(extracted),
            root,
            extra={"stage": "extract", "format": self.format_name},
        )
        return extracted

    def _extract(self, stream: BinaryIO, root: Path) -> List[Path]:
        raise NotImplementedError

    def _prepare_destination(self, destination: Path) -> Path:
        self.fs.mkdir(Path(destination), parents=True)
        return Path(destination).resolve()

    def _target_for(self, root: Path, entry_name: str, *, is_dir: bool) -> Path:
        normalized = entry_name.replace("\\", "/")
        candidate = (root / normalized).resolve()
        if not candidate.is_relative_to(root) or (candidate == root and not is_dir):
            self.logger.error(
                "unsafe archive entry %s",
                entry_name,
                extra={"stage": "extract", "destination": str(root), "format": self.format_name},
            )
            raise UnsafeArchiveEntryError(entry_name, root)
        return candidate

    def _skip_link(self, entry_name: str, kind: str) -> None:
        self.logger.debug(
            "skipping %s entry %s",
            kind,
            entry_name,
            extra={"stage": "extract", "format": self.format_name},
        )

    def _write_file(self, source: BinaryIO, target: Path, mode: Optional[int]) -> None:
        self.fs.mkdir(target.parent, parents=True)
        with self.fs.open_write(target) as sink:
            shutil.copyfileobj(source, sink)
        if not mode:
            return
        try:
            self.fs.chmod(target, stat.S_IMODE(mode))
        except OSError as exc:
            self.logger.warning(
                "unable to restore permissions %o on %s: %s",
                stat.S_IMODE(mode),
                target,
                exc,
                extra={"stage": "extract"},
            )


class ZipUnpacker(_ArchiveUnpacker):
    """Unpack ``.zip`` archives (the stream must be seekable)."""

    format_name = "zip"

    def _extract(self, stream: BinaryIO, root: Path) -> List[Path]:
        extracted: List[Path] = []
        with zipfile.ZipFile(stream) as archive:
            for member in archive.infolist():
                mode = (member.external_attr >> 16) & 0xFFFF
                if member.create_system == _UNIX_CREATE_SYSTEM and stat.S_ISLNK(mode):
                    self._skip_link(member.filename, "symlink")
                    continue
                if member.is_dir():
                    self.fs.mkdir(self._target_for(root, member.filename, is_dir=True))
                    continue
                target = self._target_for(root, member.filename, is_dir=False)
                file_mode = mode if member.create_system == _UNIX_CREATE_SYSTEM else None
                with archive.open(member, "r") as source:
                    self._write_file(source, target, file_mode)
                extracted.append(target)
        return extracted


class TarGzUnpacker(_ArchiveUnpacker):
    """Unpack gzip-compressed tar archives from a forward-only stream."""

    format_name = "tar.gz"

    def _extract(self, stream: BinaryIO, root: Path) -> List[Path]:
        extracted: List[Path] = []
        with tarfile.open(fileobj=stream, mode="r|gz") as archive:
            for member in archive:
                if member.issym():
                    self._skip_link(member.name, "symlink")
                    continue
                if member.islnk():
                    self._skip_link(member.name, "hardlink")
                    continue
                if member.isdir():
                    self.fs.mkdir(self._target_for(root, member.name, is_dir=True))
                    continue
                if not member.isfile():
                    self._skip_link(member.name, "special")
                    continue
                target = self._target_for(root, member.name, is_dir=False)
                source = archive.extractfile(member)
                if source is None:
                    continue
                with source:
                    self._write_file(source, target, member.mode)
                extracted.append(target)
        return extracted


_SUFFIX_DISPATCH = (
    (".tar.gz", TarGzUnpacker),
    (".tgz", TarGzUnpacker),
    (".zip", ZipUnpacker),
)


def unpacker_for(
    archive_path: Path | str,
    *,
    fs: Optional[FileSystem] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[Unpacker]:
    """Select an unpacker from the file name of ``archive_path``.

    Args:
        archive_path: Archive path or bare file name; only the suffix matters.
        fs: Filesystem the unpacker writes through.
        logger: Logger for extraction diagnostics.

    Returns:
        An unpacker for ``.zip``, ``.tar.gz`` and ``.tgz`` names (any case),
        otherwise ``None``.

    Examples:
        >>> type(unpacker_for("analyzers.ZIP")).__name__
        'ZipUnpacker'
        >>> unpacker_for("engine.jar") is None
        True
    """

    name = Path(archive_path).name.lower()
    for suffix, factory in _SUFFIX_DISPATCH:
        if name.endswith(suffix):
            return factory(fs=fs, logger=logger)
    return None


def unpack_file(
    archive_path: Path,
    destination: Path,
    *,
    fs: Optional[FileSystem] = None,
    logger: Optional[logging.Logger] = None,
) -> List[Path]:
    """Extract the archive at ``archive_path`` into ``destination``."""

    fs = fs or LocalFileSystem()
    unpacker = unpacker_for(archive_path, fs=fs, logger=logger)
    if unpacker is None:
        raise ConfigError(f"Unsupported archive format: {Path(archive_path).name}")
    with fs.open_read(Path(archive_path)) as stream:
        return unpacker.unpack(stream, Path(destination))
