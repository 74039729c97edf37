from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import anyio
from litestar.enums import MediaType
from litestar.response import Response

from .errors import ImageProxyError, StorageFault, UpstreamError
from .origin import OriginFetcher
from .settings import ProxySettings, load_settings_from_env
from .storage import BlobStore, CacheEntry, MetadataStore, cache_key

if TYPE_CHECKING:
    import httpx
    from litestar import Request

    from .origin import OriginResponse

LOG = logging.getLogger("imageproxy.proxy")

IMAGE_TYPES = frozenset(
    {
        "image/bmp",
        "image/x-windows-bmp",
        "image/gif",
        "image/x-icon",
        "image/jpeg",
        "image/pjpeg",
        "image/png",
        "image/tiff",
    }
)

RejectReason = Literal["status", "content_type", "declared_size", "size_cap"]


@dataclass(frozen=True, slots=True)
class Cached:
    entry: CacheEntry
    hit: bool


@dataclass(frozen=True, slots=True)
class Rejected:
    target: str
    reason: RejectReason


IngestOutcome = Cached | Rejected


class _Transfer:
    """Completion signal shared by every request waiting on one key."""

    def __init__(self) -> None:
        self.done = anyio.Event()
        self.outcome: IngestOutcome | None = None
        self.error: ImageProxyError | None = None


class ImageProxy:
    def __init__(
        self,
        settings: ProxySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._metadata = MetadataStore(settings.metadata_path)
        self._blobs = BlobStore(settings.cache_dir)
        self._origin = OriginFetcher(
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
            transport=transport,
        )
        self._in_flight: dict[str, _Transfer] = {}

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    @property
    def metadata(self) -> MetadataStore:
        return self._metadata

    @property
    def blobs(self) -> BlobStore:
        return self._blobs

    async def startup(self) -> None:
        await self._blobs.prepare()
        await self._metadata.open()
        await self._origin.startup()
        LOG.info(
            "image proxy ready (cache=%s, size_cap=%d, delivery=%s)",
            self._settings.cache_dir,
            self._settings.size_cap,
            self._describe_delivery(),
        )

    async def shutdown(self) -> None:
        await self._origin.shutdown()
        await self._metadata.close()

    async def handle(self, request: Request) -> Response:
        target = request.query_params.get("url")
        if not target:
            return Response(
                content="404 Not Found", status_code=404, media_type=MediaType.TEXT
            )
        LOG.debug("handle target=%s", target)

        try:
            outcome = await self.ingest(target)
            if isinstance(outcome, Rejected):
                return self._redirect(target)
            return await self.deliver(outcome.entry)
        except UpstreamError as error:
            return Response(
                content=f"Error while downloading: {error}",
                status_code=404,
                media_type=MediaType.TEXT,
            )
        except StorageFault as error:
            LOG.error("storage fault for %s: %s", target, error)
            return Response(content=str(error), status_code=500, media_type=MediaType.TEXT)

    async def ingest(self, target: str) -> IngestOutcome:
        """Return the cached entry for ``target``, filling the cache if needed.

        Concurrent calls for the same URL share one origin fetch: the first
        caller does the work and the others wait for its outcome. A waiter
        whose leader was cancelled before finishing starts over.

        Raises:
            UpstreamError: if the origin could not be fetched.
            StorageFault: if local storage failed or is inconsistent.
        """
        key = cache_key(target)
        while (transfer := self._in_flight.get(key)) is not None:
            LOG.debug("joining in-flight transfer %s", key)
            await transfer.done.wait()
            if transfer.error is not None:
                error = transfer.error
                raise type(error)(str(error)) from error
            if transfer.outcome is not None:
                return transfer.outcome

        transfer = _Transfer()
        self._in_flight[key] = transfer
        try:
            transfer.outcome = await self._ingest(key, target)
        except ImageProxyError as error:
            transfer.error = error
            raise
        finally:
            del self._in_flight[key]
            transfer.done.set()
        return transfer.outcome

    async def _ingest(self, key: str, target: str) -> IngestOutcome:
        entry = await self._lookup(key)
        if entry is not None:
            LOG.debug("delivering %s type=%s", key, entry.content_type)
            return Cached(entry=entry, hit=True)

        async with self._origin.fetch(target) as origin:
            reason = self._validate(origin)
            if reason is not None:
                LOG.info(
                    "not caching %s (%s, status=%s, type=%s)",
                    target,
                    reason,
                    origin.status_code,
                    origin.content_type,
                )
                return Rejected(target=target, reason=reason)

            content_type = origin.content_type
            assert content_type is not None
            entry = CacheEntry(key=key, content_type=content_type)
            if not await self._stream_to_blob(entry, origin):
                LOG.info(
                    "size cap of %d bytes exceeded mid-stream for %s",
                    self._settings.size_cap,
                    target,
                )
                return Rejected(target=target, reason="size_cap")

        LOG.info("caching %s type=%s", key, content_type)
        return Cached(entry=entry, hit=False)

    async def _lookup(self, key: str) -> CacheEntry | None:
        if not await self._blobs.exists(key):
            return None
        entry = await self._metadata.lookup(key)
        if entry is None:
            msg = f"Unknown type for cached blob {key}"
            raise StorageFault(msg)
        return entry

    def _validate(self, origin: OriginResponse) -> RejectReason | None:
        if origin.status_code != 200:
            return "status"
        if origin.content_type not in IMAGE_TYPES:
            return "content_type"
        declared = origin.declared_length
        if declared is not None and declared >= self._settings.size_cap:
            return "declared_size"
        return None

    async def _stream_to_blob(self, entry: CacheEntry, origin: OriginResponse) -> bool:
        """Copy the origin body into the blob store and record ``entry``.

        Returns False, with the partial blob removed, once the bytes received
        reach the size cap. The declared length is not trusted here.

        The blob commit and the metadata upsert run shielded from
        cancellation, so a cancelled request cannot leave a committed blob
        without its metadata row.
        """
        size_cap = self._settings.size_cap
        sink = await self._blobs.open_for_write(entry.key)
        received = 0
        try:
            async with aclosing(origin.iter_chunks()) as chunks:
                async for chunk in chunks:
                    received += len(chunk)
                    if received >= size_cap:
                        await origin.aclose()
                        await sink.discard()
                        return False
                    await sink.write(chunk)
            with anyio.CancelScope(shield=True):
                await sink.commit()
                await self._metadata.upsert(entry)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await sink.discard()
            raise
        return True

    async def deliver(self, entry: CacheEntry) -> Response:
        prefix = self._settings.x_accel_redirect
        if prefix is not None:
            return Response(
                content=b"",
                status_code=200,
                media_type=entry.content_type,
                headers={"X-Accel-Redirect": f"{prefix}{entry.key}"},
            )
        body = await self._blobs.read(entry.key)
        return Response(content=body, status_code=200, media_type=entry.content_type)

    @staticmethod
    def _redirect(target: str) -> Response:
        return Response(
            content=f"Redirecting to: {target}",
            status_code=301,
            media_type=MediaType.TEXT,
            headers={"Location": target},
        )

    def _describe_delivery(self) -> str:
        if not self._settings.delegated:
            return "direct"
        return f"x-accel-redirect {self._settings.x_accel_redirect}"

    @classmethod
    def from_env(
        cls, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> ImageProxy:
        """Create an ImageProxy instance from environment variables.

        Returns:
            ImageProxy configured from environment variables.
        """
        return cls(load_settings_from_env(), transport=transport)
