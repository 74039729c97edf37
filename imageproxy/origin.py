from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import httpx

from .errors import UpstreamError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

LOG = logging.getLogger("imageproxy.origin")


class OriginResponse:
    """Status, media type and lazily consumed body of an origin response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def content_type(self) -> str | None:
        """Media type without parameters, lowercased."""
        value = self._response.headers.get("content-type")
        if not value:
            return None
        return value.split(";", 1)[0].strip().lower() or None

    @property
    def declared_length(self) -> int | None:
        value = self._response.headers.get("content-length")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as error:
            raise UpstreamError(str(error) or type(error).__name__) from error

    async def aclose(self) -> None:
        """Stop reading and release the connection."""
        await self._response.aclose()


class OriginFetcher:
    def __init__(
        self,
        *,
        connect_timeout: float = 60.0,
        read_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(connect_timeout, read=read_timeout)
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def startup(self) -> None:
        self._http_client = httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @asynccontextmanager
    async def fetch(self, target_url: str) -> AsyncIterator[OriginResponse]:
        """Open a streaming GET to ``target_url``.

        The body is not read until :meth:`OriginResponse.iter_chunks` is
        consumed, and the connection is released when the context exits.

        Raises:
            UpstreamError: if the URL is unusable or the origin is unreachable.
        """
        if self._http_client is None:
            message = "origin fetcher not initialised"
            raise RuntimeError(message)

        try:
            request = self._http_client.build_request("GET", target_url)
            response = await self._http_client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as error:
            LOG.warning("fetch failed for %s: %s", target_url, error)
            raise UpstreamError(str(error) or type(error).__name__) from error

        LOG.debug("origin responded %s for %s", response.status_code, target_url)
        try:
            yield OriginResponse(response)
        finally:
            await response.aclose()
