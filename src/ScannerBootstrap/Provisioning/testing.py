"""Test doubles for the provisioning collaborators.

:class:`FakeServerClient` records every call the resolver and installer make
and serves scripted metadata and payloads.  :class:`FaultInjectingFileSystem`
wraps :class:`~ScannerBootstrap.Provisioning.filesystem.LocalFileSystem` and
raises configured errors for selected operations, which makes cache-layer and
permission failures reproducible without touching real permissions.
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, BinaryIO, Dict, Iterator, List, Optional, Sequence, Union

from .errors import ServerError
from .filesystem import LocalFileSystem
from .models import EngineMetadata, JreMetadata, Plugin

__all__ = ["FakeServerClient", "FaultInjectingFileSystem"]

Payload = Union[bytes, BaseException]


class FakeServerClient:
    """Scripted :class:`~ScannerBootstrap.Provisioning.server.ServerClient`.

    ``metadata`` is returned by every metadata fetch unless
    ``metadata_sequence`` is given, in which case successive fetches consume
    it (the last item repeats).  ``payloads`` works the same way for engine
    downloads: a ``bytes`` item is streamed in two chunks, an exception item
    is raised mid-stream.  ``jre_metadata_sequence`` and ``jre_payloads``
    script the Java runtime endpoints the same way.
    """

    def __init__(
        self,
        *,
        supports_provisioning: bool = True,
        metadata: Optional[EngineMetadata] = None,
        metadata_sequence: Optional[Sequence[Optional[EngineMetadata]]] = None,
        payloads: Sequence[Payload] = (),
        resources: Optional[Dict[str, Payload]] = None,
        jre_metadata_sequence: Sequence[Optional[JreMetadata]] = (None,),
        jre_payloads: Sequence[Payload] = (),
    ) -> None:
        self.supports_provisioning = supports_provisioning
        self._metadata = list(metadata_sequence) if metadata_sequence is not None else [metadata]
        self._payloads = list(payloads)
        self.resources = dict(resources or {})
        self.metadata_calls = 0
        self.download_calls: List[EngineMetadata] = []
        self.resource_calls: List[Plugin] = []
        self._jre_metadata = list(jre_metadata_sequence) or [None]
        self._jre_payloads = list(jre_payloads)
        self.jre_metadata_calls: List[tuple] = []
        self.jre_download_calls: List[JreMetadata] = []

    async def fetch_engine_metadata(self) -> Optional[EngineMetadata]:
        index = min(self.metadata_calls, len(self._metadata) - 1)
        self.metadata_calls += 1
        return self._metadata[index]

    async def download_engine(self, metadata: EngineMetadata) -> AsyncIterator[bytes]:
        self.download_calls.append(metadata)
        if not self._payloads:
            raise ServerError(f"no payload scripted for {metadata.filename}", status_code=404)
        index = min(len(self.download_calls), len(self._payloads)) - 1
        async for chunk in _stream(self._payloads[index]):
            yield chunk

    async def fetch_jre_metadata(self, os_name: str, arch: str) -> Optional[JreMetadata]:
        index = min(len(self.jre_metadata_calls), len(self._jre_metadata) - 1)
        self.jre_metadata_calls.append((os_name, arch))
        return self._jre_metadata[index]

    async def download_jre(self, metadata: JreMetadata) -> AsyncIterator[bytes]:
        self.jre_download_calls.append(metadata)
        if not self._jre_payloads:
            raise ServerError(f"no payload scripted for {metadata.filename}", status_code=404)
        index = min(len(self.jre_download_calls), len(self._jre_payloads)) - 1
        async for chunk in _stream(self._jre_payloads[index]):
            yield chunk

    async def download_plugin_resource(self, plugin: Plugin) -> AsyncIterator[bytes]:
        self.resource_calls.append(plugin)
        payload = self.resources.get(plugin.index_key)
        if payload is None:
            raise ServerError(f"resource of {plugin.index_key} not found", status_code=404)
        async for chunk in _stream(payload):
            yield chunk


async def _stream(payload: Payload) -> AsyncIterator[bytes]:
    if isinstance(payload, BaseException):
        yield b"partial"
        raise payload
    middle = len(payload) // 2
    yield payload[:middle]
    yield payload[middle:]


class FaultInjectingFileSystem(LocalFileSystem):
    """Local filesystem that raises ``faults[operation]`` when that operation runs.

    A fault can be limited to paths whose name matches ``fault_names``.
    """

    def __init__(
        self,
        faults: Optional[Dict[str, BaseException]] = None,
        *,
        fault_names: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__()
        self.faults = dict(faults or {})
        self.fault_names = set(fault_names or ())
        self.calls: List[tuple] = []

    def _check(self, operation: str, path: Path) -> None:
        self.calls.append((operation, Path(path)))
        fault = self.faults.get(operation)
        if fault is None:
            return
        if self.fault_names and Path(path).name not in self.fault_names:
            return
        raise fault

    def is_file(self, path: Path) -> bool:
        self._check("is_file", path)
        return super().is_file(path)

    def mkdir(self, path: Path, *, parents: bool = True) -> None:
        self._check("mkdir", path)
        super().mkdir(path, parents=parents)

    def open_read(self, path: Path) -> BinaryIO:
        self._check("open_read", path)
        return super().open_read(path)

    def open_write(self, path: Path) -> BinaryIO:
        self._check("open_write", path)
        return super().open_write(path)

    def replace(self, source: Path, destination: Path) -> None:
        self._check("replace", destination)
        super().replace(source, destination)

    def chmod(self, path: Path, mode: int) -> None:
        self._check("chmod", path)
        super().chmod(path, mode)

    def iter_files(self, directory: Path) -> Iterator[Path]:
        self._check("iter_files", directory)
        return super().iter_files(directory)

    def make_temp_dir(self, directory: Path, *, prefix: str) -> Path:
        self._check("make_temp_dir", directory)
        return super().make_temp_dir(directory, prefix=prefix)

    def remove_tree(self, path: Path) -> None:
        self._check("remove_tree", path)
        super().remove_tree(path)
