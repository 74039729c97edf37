from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio
import httpx
import pytest
from imageproxy import ImageProxy, ProxySettings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Callable, Generator
    from pathlib import Path


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@dataclass
class ChunkedBody:
    """Async body that records how far the consumer read."""

    chunks: list[bytes]
    pulled: int = 0
    started: anyio.Event = field(default_factory=anyio.Event)
    release: anyio.Event | None = None
    error: Exception | None = None

    async def __aiter__(self) -> AsyncIterator[bytes]:
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk
        if self.error is not None:
            raise self.error


@dataclass
class FakeOrigin:
    """Scripted origin servers behind an httpx.MockTransport."""

    routes: dict[str, Callable[[httpx.Request], httpx.Response]] = field(
        default_factory=dict
    )
    requests: list[httpx.Request] = field(default_factory=list)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="no such route")
        return handler(request)

    def serve(
        self,
        url: str,
        body: bytes,
        *,
        content_type: str | None = "image/png",
        status_code: int = 200,
    ) -> None:
        headers = {"Content-Type": content_type} if content_type else {}

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, headers=headers, content=body)

        self.routes[url] = handler

    def stream(
        self,
        url: str,
        chunks: list[bytes],
        *,
        content_type: str = "image/png",
        declared_length: int | None = None,
    ) -> ChunkedBody:
        body = ChunkedBody(chunks)
        headers = {"Content-Type": content_type}
        if declared_length is not None:
            headers["Content-Length"] = str(declared_length)

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers=headers, content=body)

        self.routes[url] = handler
        return body

    def fail(self, url: str, message: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(message, request=request)

        self.routes[url] = handler

    def hits(self, url: str) -> int:
        return sum(1 for request in self.requests if str(request.url) == url)


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def settings(cache_dir: Path) -> ProxySettings:
    """Settings with a small cap so size limits are cheap to cross."""
    return ProxySettings(cache_dir=cache_dir, size_cap=1000)


@pytest.fixture
async def proxy(
    settings: ProxySettings, origin: FakeOrigin
) -> AsyncGenerator[ImageProxy]:
    """Create and initialize a proxy wired to the fake origin."""
    proxy = ImageProxy(settings, transport=origin.transport())
    await proxy.startup()
    yield proxy
    await proxy.shutdown()


@pytest.fixture
def clean_env() -> Generator[None]:
    """Hide IMAGEPROXY_* variables from the test and restore them afterwards."""
    saved = {k: v for k, v in os.environ.items() if k.startswith("IMAGEPROXY_")}
    for key in saved:
        del os.environ[key]
    yield
    for key in [k for k in os.environ if k.startswith("IMAGEPROXY_")]:
        del os.environ[key]
    os.environ.update(saved)
