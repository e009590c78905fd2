"""Seekable async read stream over a :class:`~blob_transfer.fetcher.RangeFetcher`."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from .errors import ConsistencyError, InvalidArgumentError
from .fetcher import AccessConditions
from .settings import KIB, MIB

if TYPE_CHECKING:
    from types import TracebackType

    from .fetcher import BlobProperties, RangeFetcher

LOG = logging.getLogger("blob_transfer.read_stream")

DEFAULT_MIN_READ_SIZE = 4 * MIB
MIN_READ_SIZE_FLOOR = 16 * KIB


class BlobReadStream:
    """Reads a blob sequentially or with seeks, one buffered range at a time.

    Every fetch asks for at least ``min_read_size`` bytes and keeps them in a
    buffer, so small reads and seeks that stay inside the buffered window do
    not cost a request. The stream locks onto the blob's ETag on first use;
    a later change of the blob raises :class:`ConsistencyError`. A failed
    fetch is remembered and raised again by every later read.

    Usage::

        async with BlobReadStream(fetcher) as stream:
            header = await stream.read(512)
            await stream.seek(-16, os.SEEK_END)
            trailer = await stream.read()
    """

    def __init__(
        self,
        fetcher: RangeFetcher,
        *,
        min_read_size: int = DEFAULT_MIN_READ_SIZE,
        lock_etag: bool = True,
    ):
        if min_read_size < MIN_READ_SIZE_FLOOR:
            msg = (
                f"min_read_size must be at least {MIN_READ_SIZE_FLOOR} bytes, "
                f"got {min_read_size}"
            )
            raise InvalidArgumentError(msg)
        self._fetcher = fetcher
        self._min_read_size = min_read_size
        self._lock_etag = lock_etag
        self._properties: BlobProperties | None = None
        self._position = 0
        self._buffer = b""
        self._buffer_start = 0
        self._last_error: BaseException | None = None
        self._closed = False
        self.fetch_count = 0

    async def __aenter__(self) -> BlobReadStream:
        await self._ensure_properties()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._closed = True
        self._buffer = b""

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def etag(self) -> str | None:
        return None if self._properties is None else self._properties.etag

    async def length(self) -> int:
        return (await self._ensure_properties()).length

    def tell(self) -> int:
        return self._position

    async def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        self._check_open()
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self._position + offset
        elif whence == os.SEEK_END:
            position = await self.length() + offset
        else:
            msg = f"invalid whence {whence}"
            raise InvalidArgumentError(msg)
        if position < 0:
            msg = f"cannot seek to negative position {position}"
            raise InvalidArgumentError(msg)
        self._position = position
        return position

    async def read(self, size: int = -1) -> bytes:
        """Read up to *size* bytes, or to the end when *size* is negative.

        Returns fewer bytes only at the end of the blob.
        """
        self._check_open()
        if self._last_error is not None:
            raise self._last_error
        length = await self.length()
        if size < 0 or self._position + size > length:
            size = max(length - self._position, 0)

        parts = []
        while size > 0:
            data = self._from_buffer(size)
            if not data:
                await self._fill()
                data = self._from_buffer(size)
            parts.append(data)
            self._position += len(data)
            size -= len(data)
        return b"".join(parts)

    def _from_buffer(self, size: int) -> bytes:
        start = self._position - self._buffer_start
        if start < 0 or start >= len(self._buffer):
            return b""
        return self._buffer[start : start + size]

    async def _fill(self) -> None:
        properties = await self._ensure_properties()
        count = min(self._min_read_size, properties.length - self._position)
        etag = properties.etag if self._lock_etag else None
        conditions = AccessConditions(if_match=etag)
        LOG.debug("reading %d bytes at %d", count, self._position)
        self.fetch_count += 1
        try:
            response = await self._fetcher.fetch_range(
                self._position, count, conditions=conditions
            )
            try:
                if (
                    self._lock_etag
                    and properties.etag
                    and response.etag
                    and response.etag != properties.etag
                ):
                    msg = (
                        f"blob changed while reading: ETag {response.etag} "
                        f"does not match {properties.etag}"
                    )
                    raise ConsistencyError(msg)
                data = await response.read()
            finally:
                await response.aclose()
            if not data:
                msg = f"empty response for {count} bytes at {self._position}"
                raise ConsistencyError(msg)
        except Exception as error:
            self._last_error = error
            raise
        self._buffer = data
        self._buffer_start = self._position

    async def _ensure_properties(self) -> BlobProperties:
        if self._properties is None:
            try:
                self._properties = await self._fetcher.probe()
            except Exception as error:
                self._last_error = error
                raise
        return self._properties

    def _check_open(self) -> None:
        if self._closed:
            msg = "I/O operation on closed stream"
            raise ValueError(msg)
