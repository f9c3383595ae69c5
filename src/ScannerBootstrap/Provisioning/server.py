"""Server client contract used by the resolvers and its HTTPX adapter.

The resolvers only need a few things from the remote server: whether it can
provision artifacts at all, the engine and Java runtime metadata, and byte
streams for those artifacts and for plugin resources.  :class:`ServerClient`
captures that contract; :class:`HttpServerClient` implements it over
:class:`httpx.AsyncClient`.

Responses are streamed chunk by chunk; bodies are never buffered whole.  The
bearer token is only sent to the configured server: a direct ``downloadUrl``
on another host is fetched without the ``Authorization`` header.
"""

from __future__ import annotations

import logging
import re
from typing import AsyncIterator, Optional, Protocol, Tuple

import httpx

from . import __version__
from .errors import ConfigError, ServerError
from .models import EngineMetadata, JreMetadata, Plugin
from .settings import ProvisioningSettings

__all__ = [
    "MIN_PROVISIONING_VERSION",
    "ServerClient",
    "HttpServerClient",
    "OfflineServerClient",
    "parse_server_version",
]

MIN_PROVISIONING_VERSION: Tuple[int, ...] = (10, 6)

_VERSION_PATH = "api/server/version"
_ENGINE_PATH = "api/v2/analysis/engine"
_JRE_PATH = "api/v2/analysis/jres"
_CHUNK_SIZE = 64 * 1024


class ServerClient(Protocol):
    """Capabilities of the remote server consumed by provisioning."""

    @property
    def supports_provisioning(self) -> bool:
        ...

    async def fetch_engine_metadata(self) -> Optional[EngineMetadata]:
        ...

    def download_engine(self, metadata: EngineMetadata) -> AsyncIterator[bytes]:
        ...

    async def fetch_jre_metadata(self, os_name: str, arch: str) -> Optional[JreMetadata]:
        ...

    def download_jre(self, metadata: JreMetadata) -> AsyncIterator[bytes]:
        ...

    def download_plugin_resource(self, plugin: Plugin) -> AsyncIterator[bytes]:
        ...


def parse_server_version(text: str) -> Tuple[int, ...]:
    """Parse ``10.6.0.12345`` style versions, ignoring qualifiers such as ``-SNAPSHOT``."""

    match = re.match(r"\s*(\d+(?:\.\d+)*)", text or "")
    if not match:
        raise ServerError(f"Unrecognised server version: {text!r}")
    return tuple(int(part) for part in match.group(1).split("."))


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    raise ServerError(
        f"{what} failed with HTTP {response.status_code} ({response.request.url})",
        status_code=response.status_code,
    )


class HttpServerClient:
    """:class:`ServerClient` over an :class:`httpx.AsyncClient`."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        server_version: Tuple[int, ...],
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self.server_version = server_version
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    async def open(
        cls,
        settings: ProvisioningSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "HttpServerClient":
        """Connect to the configured server and read its version.

        Args:
            settings: Host, token and timeout to use.
            transport: Optional transport, e.g. :class:`httpx.MockTransport` in tests.
            logger: Logger for request diagnostics.

        Returns:
            A client that owns its :class:`httpx.AsyncClient`; close it with
            ``aclose`` or use it as an async context manager.

        Raises:
            ServerError: If the version request fails or returns garbage.
            httpx.HTTPError: On transport failures.
        """

        headers = {"User-Agent": f"scanner-bootstrap/{__version__}"}
        token = settings.token_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        client = httpx.AsyncClient(
            base_url=f"{settings.host_url}/",
            headers=headers,
            timeout=httpx.Timeout(settings.http_timeout),
            transport=transport,
            follow_redirects=True,
        )
        try:
            response = await client.get(_VERSION_PATH)
            _raise_for_status(response, "Server version request")
            version = parse_server_version(response.text)
        except BaseException:
            await client.aclose()
            raise
        log = logger or logging.getLogger(__name__)
        log.debug(
            "server version %s", ".".join(map(str, version)), extra={"stage": "server"}
        )
        return cls(client, version, logger=log)

    @property
    def supports_provisioning(self) -> bool:
        return self.server_version >= MIN_PROVISIONING_VERSION

    async def fetch_engine_metadata(self) -> Optional[EngineMetadata]:
        """Fetch the engine metadata document.

        Returns:
            Parsed metadata, or ``None`` when the server answers 404.

        Raises:
            ServerError: For any other non-success status.
            ConfigError: If the document is malformed.
        """

        response = await self._client.get(_ENGINE_PATH, headers={"Accept": "application/json"})
        if response.status_code == httpx.codes.NOT_FOUND:
            self.logger.debug("server published no engine metadata", extra={"stage": "server"})
            return None
        _raise_for_status(response, "Engine metadata request")
        return EngineMetadata.from_payload(response.json())

    async def fetch_jre_metadata(self, os_name: str, arch: str) -> Optional[JreMetadata]:
        """Fetch the Java runtime published for ``os_name`` and ``arch``.

        Args:
            os_name: Operating system as the server names it (``linux``, ``windows``...).
            arch: CPU architecture (``x64``, ``aarch64``).

        Returns:
            The first runtime of the server's list, or ``None`` when the list
            is empty or the endpoint answers 404.

        Raises:
            ServerError: For any other non-success status.
            ConfigError: If the document is malformed.
        """

        response = await self._client.get(
            _JRE_PATH,
            params={"os": os_name, "arch": arch},
            headers={"Accept": "application/json"},
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            self.logger.debug("server published no JRE metadata", extra={"stage": "server"})
            return None
        _raise_for_status(response, "JRE metadata request")
        payload = response.json()
        if not isinstance(payload, list):
            raise ConfigError("jre metadata: expected a JSON list")
        if not payload:
            self.logger.debug("no JRE for %s/%s", os_name, arch, extra={"stage": "server"})
            return None
        return JreMetadata.from_payload(payload[0])

    async def download_engine(self, metadata: EngineMetadata) -> AsyncIterator[bytes]:
        request = self._download_request(metadata.download_url, _ENGINE_PATH)
        async for chunk in self._stream(request, f"Engine download ({metadata.filename})"):
            yield chunk

    async def download_jre(self, metadata: JreMetadata) -> AsyncIterator[bytes]:
        request = self._download_request(metadata.download_url, f"{_JRE_PATH}/{metadata.id}")
        async for chunk in self._stream(request, f"JRE download ({metadata.filename})"):
            yield chunk

    async def download_plugin_resource(self, plugin: Plugin) -> AsyncIterator[bytes]:
        request = self._client.build_request("GET", f"static/{plugin.key}/{plugin.resource_name}")
        async for chunk in self._stream(request, f"Plugin resource download ({plugin.key})"):
            yield chunk

    def _download_request(self, download_url: Optional[str], fallback_path: str) -> httpx.Request:
        if download_url:
            request = self._client.build_request("GET", download_url)
            if request.url.host != self._client.base_url.host:
                request.headers.pop("Authorization", None)
            return request
        return self._client.build_request(
            "GET", fallback_path, headers={"Accept": "application/octet-stream"}
        )

    async def _stream(self, request: httpx.Request, what: str) -> AsyncIterator[bytes]:
        response = await self._client.send(request, stream=True)
        try:
            _raise_for_status(response, what)
            async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                yield chunk
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpServerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class OfflineServerClient:
    """Server stand-in used when no server may be contacted.

    It never supports provisioning, so the resolver stops before asking it for
    metadata; plugin resource downloads fail with :class:`ServerError`.
    """

    supports_provisioning = False

    async def fetch_engine_metadata(self) -> Optional[EngineMetadata]:
        return None

    async def fetch_jre_metadata(self, os_name: str, arch: str) -> Optional[JreMetadata]:
        return None

    async def download_engine(self, metadata: EngineMetadata) -> AsyncIterator[bytes]:
        raise ServerError(f"Offline: cannot download {metadata.filename}")
        yield b""  # pragma: no cover

    async def download_jre(self, metadata: JreMetadata) -> AsyncIterator[bytes]:
        raise ServerError(f"Offline: cannot download {metadata.filename}")
        yield b""  # pragma: no cover

    async def download_plugin_resource(self, plugin: Plugin) -> AsyncIterator[bytes]:
        raise ServerError(f"Offline: cannot download resources of plugin {plugin.key}")
        yield b""  # pragma: no cover

    async def __aenter__(self) -> "OfflineServerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
