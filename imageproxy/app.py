"""ASGI application serving cached images for ``?url=<target>`` requests."""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar import Litestar, Request, get
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .proxy import ImageProxy

if TYPE_CHECKING:
    import httpx
    from litestar.types import Receive, Scope, Send

    from .settings import ProxySettings


prometheus_config = PrometheusConfig(app_name="imageproxy", prefix="imageproxy")


def create_app(
    settings: ProxySettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Litestar:
    """Create the image caching proxy ASGI application.

    Settings default to the ``IMAGEPROXY_*`` environment. ``transport``
    replaces the network layer used to reach origins.
    """
    if settings is None:
        proxy = ImageProxy.from_env(transport=transport)
    else:
        proxy = ImageProxy(settings, transport=transport)

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def image_handler(scope: Scope, receive: Receive, send: Send) -> None:
        # Every path is accepted; the target comes from the ``url`` query parameter.
        request = Request(scope=scope, receive=receive)
        response = await proxy.handle(request)
        await response.to_asgi_response(None, request)(scope, receive, send)

    async def open_cache(app: Litestar) -> None:
        await proxy.startup()

    async def close_cache(app: Litestar) -> None:
        await proxy.shutdown()

    return Litestar(
        route_handlers=[health, image_handler, PrometheusController],
        on_startup=[open_cache],
        on_shutdown=[close_cache],
        middleware=[prometheus_config.middleware],
    )


app = create_app()
