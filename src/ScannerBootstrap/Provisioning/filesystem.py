"""Filesystem abstraction injected into the cache, downloader, and unpackers.

Components receive a :class:`FileSystem` through their constructors instead of
reaching for module-level singletons, so tests can substitute a double that
injects faults (see :mod:`ScannerBootstrap.Provisioning.testing`).  The
:class:`LocalFileSystem` adapter maps every operation onto :mod:`os` and
:mod:`pathlib`.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterator, Protocol

__all__ = ["FileSystem", "LocalFileSystem"]

logger = logging.getLogger(__name__)


class FileSystem(Protocol):
    """Filesystem operations required by the provisioning components."""

    supports_posix_permissions: bool

    def exists(self, path: Path) -> bool:
        ...

    def is_file(self, path: Path) -> bool:
        ...

    def is_dir(self, path: Path) -> bool:
        ...

    def mkdir(self, path: Path, *, parents: bool = True) -> None:
        ...

    def open_read(self, path: Path) -> BinaryIO:
        ...

    def open_write(self, path: Path) -> BinaryIO:
        ...

    def replace(self, source: Path, destination: Path) -> None:
        ...

    def unlink(self, path: Path, *, missing_ok: bool = True) -> None:
        ...

    def chmod(self, path: Path, mode: int) -> None:
        ...

    def make_temp_file(self, directory: Path, *, prefix: str, suffix: str) -> Path:
        ...

    def make_temp_dir(self, directory: Path, *, prefix: str) -> Path:
        ...

    def remove_tree(self, path: Path) -> None:
        ...

    def iter_files(self, directory: Path) -> Iterator[Path]:
        ...


class LocalFileSystem:
    """:class:`FileSystem` backed by the local operating system."""

    def __init__(self) -> None:
        # Windows only honours the read-only bit; everything else is POSIX.
        self.supports_posix_permissions = os.name == "posix"

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def is_file(self, path: Path) -> bool:
        return Path(path).is_file()

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir()

    def mkdir(self, path: Path, *, parents: bool = True) -> None:
        Path(path).mkdir(parents=parents, exist_ok=True)

    def open_read(self, path: Path) -> BinaryIO:
        return Path(path).open("rb")

    def open_write(self, path: Path) -> BinaryIO:
        return Path(path).open("wb")

    def replace(self, source: Path, destination: Path) -> None:
        """Atomically rename ``source`` over ``destination`` (same volume).

        Directories can be renamed too; the destination must not exist or be empty.
        """

        os.replace(source, destination)

    def unlink(self, path: Path, *, missing_ok: bool = True) -> None:
        Path(path).unlink(missing_ok=missing_ok)

    def chmod(self, path: Path, mode: int) -> None:
        if not self.supports_posix_permissions:
            logger.debug("skipping chmod on platform without POSIX modes: %s", path)
            return
        os.chmod(path, mode)

    def make_temp_file(self, directory: Path, *, prefix: str, suffix: str) -> Path:
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
        os.close(fd)
        return Path(name)

    def make_temp_dir(self, directory: Path, *, prefix: str) -> Path:
        """Create a private directory next to where its contents will be promoted."""

        return Path(tempfile.mkdtemp(prefix=prefix, dir=directory))

    def remove_tree(self, path: Path) -> None:
        if Path(path).exists():
            shutil.rmtree(path)

    def iter_files(self, directory: Path) -> Iterator[Path]:
        root = Path(directory)
        if not root.is_dir():
            return iter(())
        return (path for path in sorted(root.rglob("*")) if path.is_file())
