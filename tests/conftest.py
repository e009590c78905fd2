from __future__ import annotations

import random
from collections import deque
from typing import TYPE_CHECKING

import anyio
import httpx
import pytest

from blob_transfer.emulator import InMemoryBlobService, create_app
from blob_transfer.errors import ConsistencyError
from blob_transfer.fetcher import BlobProperties, RangeResponse, content_md5
from blob_transfer.settings import MIB, DownloadSettings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Callable

    from blob_transfer.fetcher import AccessConditions


class FakeRangeFetcher:
    """In-memory range source with instrumentation and injectable faults.

    Faults are queued per requested offset and consumed one per fetch. A
    fault is an exception to raise, or one of ``"truncate"`` (return half the
    range), ``"stall"`` (hang before the first chunk) or ``"corrupt"`` (send a
    wrong Content-MD5).
    """

    def __init__(
        self,
        data: bytes,
        *,
        etag: str | None = '"0x8D0000000000001"',
        metadata: dict[str, str] | None = None,
        chunk_size: int = 256 * 1024,
        delay: float = 0.0,
    ):
        self.data = data
        self.etag = etag
        self.metadata = metadata or {}
        self.chunk_size = chunk_size
        self.delay = delay
        self.faults: dict[int, deque[BaseException | str]] = {}
        self.calls: list[tuple[int, int | None]] = []
        self.probes = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.on_fetch: Callable[[int, int | None], None] | None = None

    def fail(self, offset: int, *faults: BaseException | str) -> None:
        self.faults.setdefault(offset, deque()).extend(faults)

    async def probe(self) -> BlobProperties:
        self.probes += 1
        return BlobProperties(
            length=len(self.data), etag=self.etag, metadata=self.metadata
        )

    async def fetch_range(
        self,
        offset: int,
        length: int | None,
        *,
        conditions: AccessConditions | None = None,
        transactional_md5: bool = False,
    ) -> RangeResponse:
        self.calls.append((offset, length))
        if self.on_fetch is not None:
            self.on_fetch(offset, length)
        if conditions is not None and conditions.if_match not in {None, self.etag}:
            msg = "condition not met"
            raise ConsistencyError(msg)

        fault = None
        if self.faults.get(offset):
            fault = self.faults[offset].popleft()
            if isinstance(fault, BaseException):
                raise fault

        end = len(self.data) if length is None else min(offset + length, len(self.data))
        body = self.data[offset:end]
        md5 = content_md5(body) if transactional_md5 else None
        if fault == "truncate":
            body = body[: len(body) // 2]
        elif fault == "corrupt":
            md5 = content_md5(b"corrupt")
        stall = fault == "stall"

        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

        async def chunks() -> AsyncIterator[bytes]:
            if stall:
                await anyio.sleep_forever()
            for start in range(0, len(body), self.chunk_size):
                await anyio.sleep(self.delay)
                yield body[start : start + self.chunk_size]

        async def release() -> None:
            self.in_flight -= 1

        return RangeResponse(
            chunks=chunks(),
            offset=offset,
            length=len(body),
            etag=self.etag,
            content_md5=md5,
            close=release,
        )


def make_data(size: int, seed: int = 7) -> bytes:
    return random.Random(seed).randbytes(size)


@pytest.fixture
def blob_data() -> bytes:
    """Three full 4 MiB ranges plus a ragged tail."""
    return make_data(3 * 4 * MIB + 12345)


@pytest.fixture
def fake_fetcher(blob_data: bytes) -> FakeRangeFetcher:
    return FakeRangeFetcher(blob_data)


@pytest.fixture
def download_settings() -> DownloadSettings:
    return DownloadSettings(
        range_size=4 * MIB,
        max_concurrency=4,
        max_retries=3,
        backoff_base=0.0,
        backoff_max=0.0,
        max_idle_seconds=5.0,
    )


@pytest.fixture
def blob_service() -> InMemoryBlobService:
    return InMemoryBlobService()


@pytest.fixture
async def emulator_client(
    blob_service: InMemoryBlobService,
) -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client wired to the emulator app in-process."""
    app = create_app(blob_service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://emulator"
    ) as client:
        yield client
