"""Parallel ranged download of one blob into a local file.

The requested byte range is split into fixed-size sub-ranges that a bounded
pool of anyio tasks fetches concurrently. Each sub-range is written at its own
offset in the destination, so completion order does not matter. Transient
failures are retried per sub-range, resuming after the bytes already written.
The first fatal error, or the cancellation signal, aborts the whole job.

Logger: ``blob_transfer.download``.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

import anyio
from anyio import to_thread

from .errors import (
    ConsistencyError,
    FetchError,
    InvalidArgumentError,
    OperationCanceledError,
    RangeAlignmentError,
    SourceIntegrityError,
    TransientDownloadError,
)
from .fetcher import MAX_RANGE_GET_CONTENT_MD5_SIZE, AccessConditions, content_md5
from .retry import RetryPolicy, is_transient
from .settings import KIB, MIB, load_download_settings_from_env

if TYPE_CHECKING:
    from collections.abc import Callable

    from .fetcher import RangeFetcher, RangeResponse
    from .settings import DownloadSettings

LOG = logging.getLogger("blob_transfer.download")

# The largest range the service returns a transactional MD5 for is also the
# smallest range size the downloader accepts.
MIN_RANGE_SIZE = MAX_RANGE_GET_CONTENT_MD5_SIZE
RANGE_ALIGNMENT = 4 * KIB
DEFAULT_RANGE_SIZE = 16 * MIB

_seek_write_lock = threading.Lock()


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class DownloadRangeTask:
    """One sub-range of a download.

    Attributes:
        index: Position of the sub-range in the partition.
        start_offset: Offset of the first byte in the source blob.
        length: Bytes in the sub-range.
        attempts: Fetch attempts made so far.
        written: Bytes already written to the destination.
        status: Current state of the sub-range.
    """

    index: int
    start_offset: int
    length: int
    attempts: int = 0
    written: int = 0
    status: TaskStatus = TaskStatus.PENDING

    @property
    def end_offset(self) -> int:
        return self.start_offset + self.length


def validate_range_size(
    range_size: int, *, use_transactional_md5: bool = False
) -> int:
    """Check a sub-range size before any network call.

    Raises:
        InvalidArgumentError: If the size is below the minimum.
        RangeAlignmentError: If the size is not a multiple of 4 KiB, or MD5
            validation is on and the size differs from the largest range the
            service returns an MD5 for.
    """
    if range_size < MIN_RANGE_SIZE:
        msg = f"range_size must be at least {MIN_RANGE_SIZE} bytes, got {range_size}"
        raise InvalidArgumentError(msg)
    if range_size % RANGE_ALIGNMENT:
        msg = (
            f"range_size must be a multiple of {RANGE_ALIGNMENT} bytes, "
            f"got {range_size}"
        )
        raise RangeAlignmentError(msg)
    if use_transactional_md5 and range_size != MAX_RANGE_GET_CONTENT_MD5_SIZE:
        msg = (
            "transactional MD5 validation requires range_size to be "
            f"{MAX_RANGE_GET_CONTENT_MD5_SIZE} bytes, got {range_size}"
        )
        raise RangeAlignmentError(msg)
    return range_size


def partition_range(
    start: int, length: int, range_size: int
) -> list[DownloadRangeTask]:
    """Split ``[start, start + length)`` into consecutive sub-ranges."""
    if range_size < 1:
        msg = f"range_size must be >= 1, got {range_size}"
        raise InvalidArgumentError(msg)
    tasks = []
    end = start + length
    for index, offset in enumerate(range(start, end, range_size)):
        tasks.append(DownloadRangeTask(index, offset, min(range_size, end - offset)))
    return tasks


class CancellationSignal:
    """Cooperative cancellation shared by every worker of a job.

    :meth:`cancel` may be called before the job starts or from any task on
    the job's event loop.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: anyio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        if self._cancelled:
            return
        if self._event is None:
            self._event = anyio.Event()
        await self._event.wait()


@dataclass
class ParallelDownloadJob:
    """State and report of one parallel download."""

    path: str
    offset: int
    total_length: int
    range_size: int
    max_concurrency: int
    etag: str | None = None
    tasks: list[DownloadRangeTask] = field(default_factory=list)
    completed_bytes: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0
    fetch_count: int = 0

    @property
    def complete(self) -> bool:
        return self.completed_bytes == self.total_length and all(
            task.status is TaskStatus.COMPLETE for task in self.tasks
        )


@dataclass
class _JobContext:
    job: ParallelDownloadJob
    fd: int
    pending: deque[DownloadRangeTask]
    cancellation: CancellationSignal
    use_transactional_md5: bool
    progress: Callable[[int], None] | None
    scope: anyio.CancelScope | None = None
    errors: list[tuple[int, BaseException]] = field(default_factory=list)
    canceled_first: bool = False

    def fail(self, index: int, error: BaseException) -> None:
        if not self.canceled_first:
            self.errors.append((index, error))
        if self.scope is not None:
            self.scope.cancel()


def _open_destination(path: str, size: int) -> int:
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_BINARY", 0)
    fd = os.open(path, flags, 0o666)
    try:
        os.ftruncate(fd, size)
    except OSError:
        os.close(fd)
        raise
    return fd


def _write_at(fd: int, data: bytes, position: int) -> None:
    view = memoryview(data)
    if hasattr(os, "pwrite"):
        while view:
            written = os.pwrite(fd, view, position)
            view = view[written:]
            position += written
        return
    with _seek_write_lock:
        os.lseek(fd, position, os.SEEK_SET)
        while view:
            view = view[os.write(fd, view) :]


class ParallelRangeDownloader:
    """Downloads a blob range into a file with concurrent ranged GETs.

    Args:
        fetcher: Source of the blob's bytes.
        settings: Defaults for range size, concurrency, retries and timeouts;
            read from the environment when omitted.
        retry: Overrides the retry policy derived from *settings*.
    """

    def __init__(
        self,
        fetcher: RangeFetcher,
        *,
        settings: DownloadSettings | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._fetcher = fetcher
        self._settings = settings or load_download_settings_from_env()
        self._retry = retry or RetryPolicy.from_settings(self._settings)

    async def download_to_file(
        self,
        path: str | os.PathLike[str],
        *,
        offset: int = 0,
        length: int | None = None,
        range_size: int | None = None,
        max_concurrency: int | None = None,
        cancellation: CancellationSignal | None = None,
        use_transactional_md5: bool | None = None,
        progress: Callable[[int], None] | None = None,
    ) -> ParallelDownloadJob:
        """Download ``[offset, offset + length)`` of the blob into *path*.

        The file is a dense copy of the range: byte 0 of the file is byte
        *offset* of the blob. An omitted *length* means "to the end".

        Raises:
            InvalidArgumentError: For a bad range size, offset, length or
                concurrency, before any network call.
            OperationCanceledError: If *cancellation* fired first.
            TransientDownloadError: If a sub-range exhausted its retries.
            ConsistencyError: If the blob changed during the download.
            SourceIntegrityError: If a sub-range failed MD5 validation.
        """
        use_md5 = (
            self._settings.use_transactional_md5
            if use_transactional_md5 is None
            else use_transactional_md5
        )
        if range_size is None:
            range_size = (
                MAX_RANGE_GET_CONTENT_MD5_SIZE if use_md5 else self._settings.range_size
            )
        validate_range_size(range_size, use_transactional_md5=use_md5)
        if max_concurrency is None:
            max_concurrency = self._settings.max_concurrency
        if max_concurrency < 1:
            msg = f"max_concurrency must be >= 1, got {max_concurrency}"
            raise InvalidArgumentError(msg)
        if offset < 0:
            msg = f"offset must be >= 0, got {offset}"
            raise InvalidArgumentError(msg)
        if length is not None and length < 0:
            msg = f"length must be >= 0, got {length}"
            raise InvalidArgumentError(msg)

        cancellation = cancellation or CancellationSignal()
        if cancellation.cancelled:
            msg = "download was cancelled before it started"
            raise OperationCanceledError(msg)

        properties = await self._fetcher.probe()
        if offset > properties.length:
            msg = f"offset {offset} is beyond the blob end ({properties.length})"
            raise InvalidArgumentError(msg)
        available = properties.length - offset
        total = available if length is None else min(length, available)

        job = ParallelDownloadJob(
            path=os.fspath(path),
            offset=offset,
            total_length=total,
            range_size=range_size,
            max_concurrency=max_concurrency,
            etag=properties.etag,
            tasks=partition_range(offset, total, range_size),
        )
        LOG.info(
            "downloading %d bytes at offset %d into %s (%d ranges, concurrency %d)",
            total,
            offset,
            job.path,
            len(job.tasks),
            max_concurrency,
        )

        fd = await _run_sync(_open_destination, job.path, total)
        try:
            if job.tasks:
                await self._run(job, fd, cancellation, use_md5, progress)
        finally:
            with anyio.CancelScope(shield=True):
                await _run_sync(os.close, fd)

        LOG.info("downloaded %d bytes into %s", job.completed_bytes, job.path)
        return job

    async def _run(
        self,
        job: ParallelDownloadJob,
        fd: int,
        cancellation: CancellationSignal,
        use_md5: bool,
        progress: Callable[[int], None] | None,
    ) -> None:
        ctx = _JobContext(
            job=job,
            fd=fd,
            pending=deque(job.tasks),
            cancellation=cancellation,
            use_transactional_md5=use_md5,
            progress=progress,
        )

        async def watch_cancellation(scope: anyio.CancelScope) -> None:
            await cancellation.wait()
            if not ctx.errors:
                ctx.canceled_first = True
            LOG.info("cancellation requested for %s", job.path)
            scope.cancel()

        async with anyio.create_task_group() as outer:
            outer.start_soon(watch_cancellation, outer.cancel_scope)
            async with anyio.create_task_group() as workers:
                ctx.scope = workers.cancel_scope
                for _ in range(min(job.max_concurrency, len(job.tasks))):
                    workers.start_soon(self._worker, ctx)
            outer.cancel_scope.cancel()

        if ctx.canceled_first:
            msg = f"download into {job.path} was cancelled"
            raise OperationCanceledError(msg)
        if ctx.errors:
            index, error = min(ctx.errors, key=lambda item: item[0])
            LOG.error("download into %s failed on range %d: %s", job.path, index, error)
            raise error
        if not job.complete:
            msg = f"download into {job.path} was cancelled"
            raise OperationCanceledError(msg)

    async def _worker(self, ctx: _JobContext) -> None:
        while ctx.pending:
            if ctx.cancellation.cancelled:
                return
            task = ctx.pending.popleft()
            try:
                await self._download_task(ctx, task)
            except Exception as error:  # noqa: BLE001
                task.status = TaskStatus.FAILED
                ctx.fail(task.index, error)
                return

    async def _download_task(self, ctx: _JobContext, task: DownloadRangeTask) -> None:
        task.status = TaskStatus.IN_FLIGHT
        while True:
            if ctx.cancellation.cancelled:
                msg = f"range {task.index} cancelled"
                raise OperationCanceledError(msg)
            task.attempts += 1
            try:
                await self._fetch_into(ctx, task)
            except Exception as error:
                if not is_transient(error):
                    raise
                if task.attempts > self._retry.max_retries:
                    raise TransientDownloadError(task.index, task.attempts) from error
                if ctx.use_transactional_md5 and task.written:
                    # The checksum covers the whole range; start it over.
                    ctx.job.completed_bytes -= task.written
                    task.written = 0
                delay = self._retry.compute_delay(task.attempts - 1)
                LOG.warning(
                    "range %d attempt %d failed (%s), retrying from +%d in %.2fs",
                    task.index,
                    task.attempts,
                    error,
                    task.written,
                    delay,
                )
                await anyio.sleep(delay)
                continue
            task.status = TaskStatus.COMPLETE
            LOG.debug(
                "range %d complete (%d bytes, %d attempts)",
                task.index,
                task.length,
                task.attempts,
            )
            return

    async def _fetch_into(self, ctx: _JobContext, task: DownloadRangeTask) -> None:
        job = ctx.job
        start = task.start_offset + task.written
        remaining = task.length - task.written
        idle = self._settings.max_idle_seconds

        job.in_flight += 1
        job.fetch_count += 1
        job.peak_in_flight = max(job.peak_in_flight, job.in_flight)
        try:
            LOG.debug("range %d: fetching %d bytes at %d", task.index, remaining, start)
            with anyio.fail_after(idle):
                response = await self._fetcher.fetch_range(
                    start,
                    remaining,
                    conditions=AccessConditions(if_match=job.etag),
                    transactional_md5=ctx.use_transactional_md5,
                )
            try:
                if job.etag and response.etag and response.etag != job.etag:
                    msg = (
                        f"blob changed during download: ETag {response.etag} "
                        f"does not match {job.etag}"
                    )
                    raise ConsistencyError(msg)
                if ctx.use_transactional_md5:
                    await self._copy_verified(ctx, task, response, idle)
                else:
                    await self._copy(ctx, task, response, idle)
            finally:
                with anyio.CancelScope(shield=True):
                    await response.aclose()
        finally:
            job.in_flight -= 1

        if task.written < task.length:
            msg = (
                f"range {task.index} ended after {task.written} of "
                f"{task.length} bytes"
            )
            raise FetchError(msg, transient=True)

    async def _next_chunk(self, response: RangeResponse, idle: float) -> bytes | None:
        with anyio.fail_after(idle):
            return await anext(response.chunks, None)

    async def _copy(
        self,
        ctx: _JobContext,
        task: DownloadRangeTask,
        response: RangeResponse,
        idle: float,
    ) -> None:
        buffer = bytearray()
        buffer_size = self._settings.write_buffer_size
        while (chunk := await self._next_chunk(response, idle)) is not None:
            if task.written + len(buffer) + len(chunk) > task.length:
                msg = f"range {task.index}: service returned more bytes than requested"
                raise FetchError(msg, transient=False)
            buffer += chunk
            if len(buffer) >= buffer_size:
                await self._write(ctx, task, bytes(buffer))
                buffer.clear()
        if buffer:
            await self._write(ctx, task, bytes(buffer))

    async def _copy_verified(
        self,
        ctx: _JobContext,
        task: DownloadRangeTask,
        response: RangeResponse,
        idle: float,
    ) -> None:
        chunks = []
        while (chunk := await self._next_chunk(response, idle)) is not None:
            chunks.append(chunk)
        data = b"".join(chunks)
        if len(data) > task.length:
            msg = f"range {task.index}: service returned more bytes than requested"
            raise FetchError(msg, transient=False)
        if len(data) < task.length:
            # Short read; retried as a whole range.
            return
        if response.verified:
            await self._write(ctx, task, data)
            return
        if response.content_md5 is None:
            msg = f"range {task.index}: service did not return Content-MD5"
            raise SourceIntegrityError(msg)
        actual = content_md5(data)
        if actual != response.content_md5:
            msg = (
                f"range {task.index}: Content-MD5 mismatch "
                f"(expected {response.content_md5}, got {actual})"
            )
            raise SourceIntegrityError(msg)
        await self._write(ctx, task, data)

    async def _write(
        self, ctx: _JobContext, task: DownloadRangeTask, data: bytes
    ) -> None:
        position = task.start_offset + task.written - ctx.job.offset
        await _run_sync(partial(_write_at, ctx.fd, data, position))
        task.written += len(data)
        ctx.job.completed_bytes += len(data)
        if ctx.progress is not None:
            ctx.progress(ctx.job.completed_bytes)
