from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiosqlite
import anyio

from .errors import StorageFault

if TYPE_CHECKING:
    from pathlib import Path

    from anyio import AsyncFile

LOG = logging.getLogger("imageproxy.storage")

PARTIAL_SUFFIX = ".part"


def cache_key(target_url: str) -> str:
    """Return the content address for ``target_url``.

    The key is the hex SHA-256 digest of the URL, so it doubles as a safe
    file name inside the cache directory.
    """
    return hashlib.sha256(target_url.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    content_type: str


class MetadataStore:
    """Durable mapping from cache key to content type, kept in SQLite."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        try:
            self._db = await aiosqlite.connect(self._path)
            await self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS content_types (
                    key TEXT PRIMARY KEY,
                    content_type TEXT NOT NULL
                )
                """
            )
            await self._db.commit()
        except aiosqlite.Error as error:
            msg = f"cannot open metadata store {self._path}: {error}"
            raise StorageFault(msg) from error
        LOG.debug("metadata store open at %s", self._path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _connection(self) -> aiosqlite.Connection:
        if self._db is None:
            message = "metadata store not opened"
            raise RuntimeError(message)
        return self._db

    async def lookup(self, key: str) -> CacheEntry | None:
        db = self._connection()
        try:
            async with db.execute(
                "SELECT content_type FROM content_types WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as error:
            msg = f"metadata lookup failed for {key}: {error}"
            raise StorageFault(msg) from error
        if row is None:
            return None
        return CacheEntry(key=key, content_type=row[0])

    async def upsert(self, entry: CacheEntry) -> None:
        """Insert or overwrite the row for ``entry.key`` and commit it."""
        db = self._connection()
        try:
            await db.execute(
                """
                INSERT INTO content_types (key, content_type) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET content_type = excluded.content_type
                """,
                (entry.key, entry.content_type),
            )
            await db.commit()
        except aiosqlite.Error as error:
            msg = f"metadata upsert failed for {entry.key}: {error}"
            raise StorageFault(msg) from error


class BlobSink:
    """Write handle for one provisional blob.

    Bytes land in ``<key>.part`` and only appear under the final name once
    :meth:`commit` renames the file into place.
    """

    def __init__(self, store: BlobStore, key: str, file: AsyncFile[bytes]) -> None:
        self._store = store
        self._file: AsyncFile[bytes] | None = file
        self.key = key
        self.bytes_written = 0

    async def write(self, chunk: bytes) -> None:
        if self._file is None:
            message = f"blob sink for {self.key} is closed"
            raise RuntimeError(message)
        try:
            await self._file.write(chunk)
        except OSError as error:
            msg = f"cannot write blob {self.key}: {error}"
            raise StorageFault(msg) from error
        self.bytes_written += len(chunk)

    async def _close_file(self) -> None:
        if self._file is not None:
            file, self._file = self._file, None
            await file.aclose()

    async def commit(self) -> None:
        try:
            await self._close_file()
            await self._store.partial_path(self.key).replace(
                self._store.path_for(self.key)
            )
        except OSError as error:
            msg = f"cannot commit blob {self.key}: {error}"
            raise StorageFault(msg) from error

    async def discard(self) -> None:
        try:
            await self._close_file()
        finally:
            await self._store.discard(self.key)


class BlobStore:
    """Cached response bodies, one file per cache key."""

    def __init__(self, root: Path) -> None:
        self._root = anyio.Path(root)

    async def prepare(self) -> None:
        """Create the cache directory and drop partials left by a crash."""
        try:
            await self._root.mkdir(parents=True, exist_ok=True)
            async for leftover in self._root.glob(f"*{PARTIAL_SUFFIX}"):
                LOG.warning("removing stale partial blob %s", leftover.name)
                await leftover.unlink(missing_ok=True)
        except OSError as error:
            msg = f"cannot prepare cache directory {self._root}: {error}"
            raise StorageFault(msg) from error

    def path_for(self, key: str) -> anyio.Path:
        return self._root / key

    def partial_path(self, key: str) -> anyio.Path:
        return self._root / f"{key}{PARTIAL_SUFFIX}"

    async def exists(self, key: str) -> bool:
        return await self.path_for(key).is_file()

    async def read(self, key: str) -> bytes:
        try:
            return await self.path_for(key).read_bytes()
        except OSError as error:
            msg = f"cannot read blob {key}: {error}"
            raise StorageFault(msg) from error

    async def open_for_write(self, key: str) -> BlobSink:
        try:
            file = await anyio.open_file(self.partial_path(key), "wb")
        except OSError as error:
            msg = f"cannot open blob {key} for writing: {error}"
            raise StorageFault(msg) from error
        return BlobSink(self, key, file)

    async def discard(self, key: str) -> None:
        try:
            await self.partial_path(key).unlink(missing_ok=True)
        except OSError as error:
            msg = f"cannot discard partial blob {key}: {error}"
            raise StorageFault(msg) from error
