"""In-memory blob service speaking the HTTP subset the range fetchers use.

Serves ``PUT`` and ranged ``GET`` under ``/blobs/<name>`` with ETags,
``x-ms-meta-*`` metadata, ``If-Match`` preconditions and per-range
``Content-MD5``. Failures can be injected per blob to exercise retries.

Serve ``blob_transfer.emulator:app`` with any ASGI server.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field

from fastapi import FastAPI, Request, Response

from .fetcher import MAX_RANGE_GET_CONTENT_MD5_SIZE, content_md5

LOG = logging.getLogger("blob_transfer.emulator")

METADATA_PREFIX = "x-ms-meta-"

@dataclass
class StoredBlob:
    data: bytes
    etag: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class InjectedFault:
    """A canned misbehaviour for a later GET of a blob.

    ``status`` answers with that HTTP status; ``truncate_to`` sends only the
    first bytes of the body. With ``offset`` set the fault waits for a range
    request starting at that offset.
    """

    status: int | None = None
    truncate_to: int | None = None
    offset: int | None = None


class InMemoryBlobService:
    def __init__(self) -> None:
        self._blobs: dict[str, StoredBlob] = {}
        self._faults: dict[str, deque[InjectedFault]] = {}
        self._versions = itertools.count(1)
        self.requests: list[tuple[str, str, str | None]] = []

    def put(
        self, name: str, data: bytes, metadata: dict[str, str] | None = None
    ) -> str:
        """Store *data* under *name*, replacing any previous version."""
        digest = hashlib.md5(data).hexdigest()  # noqa: S324
        etag = f'"{digest}-{next(self._versions)}"'
        self._blobs[name] = StoredBlob(
            data=data, etag=etag, metadata=dict(metadata or {})
        )
        LOG.debug("stored %s (%d bytes, etag=%s)", name, len(data), etag)
        return etag

    def get(self, name: str) -> StoredBlob | None:
        return self._blobs.get(name)

    def delete(self, name: str) -> None:
        self._blobs.pop(name, None)
        self._faults.pop(name, None)

    def inject(self, name: str, fault: InjectedFault, count: int = 1) -> None:
        self._faults.setdefault(name, deque()).extend([fault] * count)

    def fail_next(
        self, name: str, status: int = 503, count: int = 1, offset: int | None = None
    ) -> None:
        self.inject(name, InjectedFault(status=status, offset=offset), count)

    async def handle(self, request: Request, name: str) -> Response:
        range_header = request.headers.get("range")
        self.requests.append((request.method, name, range_header))
        LOG.debug(
            "handle method=%s name=%s range=%s", request.method, name, range_header
        )
        if request.method == "PUT":
            return await self._handle_put(request, name)
        return self._handle_get(request, name, range_header)

    async def _handle_put(self, request: Request, name: str) -> Response:
        body = await request.body()
        metadata = {
            key[len(METADATA_PREFIX) :]: value
            for key, value in request.headers.items()
            if key.lower().startswith(METADATA_PREFIX)
        }
        etag = self.put(name, body, metadata)
        return Response(status_code=201, headers={"ETag": etag})

    def _take_fault(self, name: str, start: int | None) -> InjectedFault | None:
        faults = self._faults.get(name)
        if not faults:
            return None
        for fault in faults:
            if fault.offset is None or fault.offset == start:
                faults.remove(fault)
                return fault
        return None

    def _handle_get(
        self, request: Request, name: str, range_header: str | None
    ) -> Response:
        blob = self._blobs.get(name)
        if blob is None:
            return Response(content=b"BlobNotFound", status_code=404)

        total_size = len(blob.data)
        parsed = _parse_range(range_header, total_size) if range_header else None
        fault = self._take_fault(name, parsed[0] if parsed else None)
        if fault is not None and fault.status is not None:
            LOG.debug("injected HTTP %d for %s", fault.status, name)
            return Response(status_code=fault.status)

        if_match = request.headers.get("if-match")
        if if_match is not None and if_match not in {"*", blob.etag}:
            return Response(content=b"ConditionNotMet", status_code=412)

        headers = {"ETag": blob.etag}
        headers.update(
            {f"{METADATA_PREFIX}{key}": value for key, value in blob.metadata.items()}
        )
        if not range_header:
            return Response(content=blob.data, status_code=200, headers=headers)
        if parsed is None:
            headers["Content-Range"] = f"bytes */{total_size}"
            return Response(status_code=416, headers=headers)

        start, end = parsed
        body = blob.data[start : end + 1]
        if request.headers.get("x-ms-range-get-content-md5", "").lower() == "true":
            if len(body) > MAX_RANGE_GET_CONTENT_MD5_SIZE:
                return Response(content=b"InvalidRange", status_code=400)
            headers["Content-MD5"] = content_md5(body)

        headers["Content-Range"] = f"bytes {start}-{end}/{total_size}"
        if fault is not None and fault.truncate_to is not None:
            body = body[: fault.truncate_to]
        return Response(content=body, status_code=206, headers=headers)


def _parse_range(range_header: str, total_size: int) -> tuple[int, int] | None:
    """Resolve a single ``bytes=`` range; ``None`` when it is unsatisfiable."""
    try:
        unit, ranges = range_header.split("=", 1)
        if unit.strip().lower() != "bytes":
            return 0, total_size - 1
        start_str, end_str = ranges.split(",")[0].strip().split("-", 1)
        if start_str:
            start = int(start_str)
            end = int(end_str) if end_str else total_size - 1
        else:
            start = max(total_size - int(end_str), 0)
            end = total_size - 1
    except ValueError:
        return 0, total_size - 1
    if start >= total_size or start > end:
        return None
    return start, min(end, total_size - 1)


def create_app(service: InMemoryBlobService | None = None) -> FastAPI:
    """Create the blob service emulator ASGI application."""
    service = service or InMemoryBlobService()
    app = FastAPI(title="blob-transfer emulator")
    app.state.blob_service = service

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.api_route("/blobs/{name:path}", methods=["GET", "PUT"])
    async def blob_handler(name: str, request: Request) -> Response:
        return await service.handle(request, name)

    return app


app = create_app()
