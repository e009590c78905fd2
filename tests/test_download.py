"""Tests for the parallel ranged downloader."""

from __future__ import annotations

import anyio
import pytest
from conftest import FakeRangeFetcher, make_data

from blob_transfer.download import (
    CancellationSignal,
    ParallelRangeDownloader,
    TaskStatus,
    partition_range,
    validate_range_size,
)
from blob_transfer.errors import (
    ConsistencyError,
    FetchError,
    InvalidArgumentError,
    OperationCanceledError,
    RangeAlignmentError,
    SourceIntegrityError,
    TransientDownloadError,
)
from blob_transfer.retry import RetryPolicy
from blob_transfer.settings import KIB, MIB, DownloadSettings


class TestValidateRangeSize:
    """Test range size validation."""

    def test_accepts_aligned_sizes(self):
        """Test that aligned sizes above the minimum pass."""
        assert validate_range_size(16 * MIB) == 16 * MIB
        assert validate_range_size(4 * MIB + 4 * KIB) == 4 * MIB + 4 * KIB

    def test_below_minimum(self):
        """Test that sizes under 4 MiB are rejected."""
        with pytest.raises(InvalidArgumentError):
            validate_range_size(4 * MIB - 4 * KIB)

    def test_unaligned(self):
        """Test that a size off the 4 KiB grid is rejected."""
        with pytest.raises(RangeAlignmentError):
            validate_range_size(16 * MIB + 3)
        assert issubclass(RangeAlignmentError, InvalidArgumentError)

    def test_transactional_md5_requires_4_mib(self):
        """Test that MD5 validation pins the range size."""
        assert validate_range_size(4 * MIB, use_transactional_md5=True) == 4 * MIB
        with pytest.raises(RangeAlignmentError):
            validate_range_size(8 * MIB, use_transactional_md5=True)


class TestPartitionRange:
    """Test splitting a range into sub-ranges."""

    def test_200_mib_in_16_mib_ranges(self):
        """Test the 12 full ranges plus an 8 MiB remainder."""
        tasks = partition_range(0, 200 * MIB, 16 * MIB)

        assert len(tasks) == 13
        assert [task.length for task in tasks[:12]] == [16 * MIB] * 12
        assert tasks[-1].length == 8 * MIB

    @pytest.mark.parametrize(
        ("start", "length", "size"),
        [(0, 1, 4), (0, 4, 4), (3, 17, 4), (10, 1000, 7), (0, 0, 4)],
    )
    def test_tiles_exactly(self, start, length, size):
        """Test that sub-ranges cover the range without gaps or overlaps."""
        tasks = partition_range(start, length, size)

        position = start
        for index, task in enumerate(tasks):
            assert task.index == index
            assert task.start_offset == position
            assert 0 < task.length <= size
            assert task.status is TaskStatus.PENDING
            position = task.end_offset
        assert position == start + length
        assert sum(task.length for task in tasks) == length


class TestParallelRangeDownloader:
    """Test downloading into a file."""

    @pytest.mark.anyio
    async def test_download_whole_blob(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that the file is a byte-identical copy of the blob."""
        target = tmp_path / "blob.bin"
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        job = await downloader.download_to_file(target)

        assert target.read_bytes() == blob_data
        assert job.total_length == len(blob_data)
        assert job.completed_bytes == len(blob_data)
        assert len(job.tasks) == 4
        assert job.complete
        assert fake_fetcher.probes == 1

    @pytest.mark.anyio
    async def test_partial_range_is_dense(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that an offset download starts at file position zero."""
        target = tmp_path / "part.bin"
        offset, length = 1 * MIB + 7, 5 * MIB + 11
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        job = await downloader.download_to_file(target, offset=offset, length=length)

        assert target.read_bytes() == blob_data[offset : offset + length]
        assert [task.start_offset for task in job.tasks] == [offset, offset + 4 * MIB]

    @pytest.mark.anyio
    async def test_length_is_clamped_to_blob(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that asking past the end downloads what exists."""
        target = tmp_path / "tail.bin"
        offset = len(blob_data) - 100
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        job = await downloader.download_to_file(target, offset=offset, length=10 * MIB)

        assert job.total_length == 100
        assert target.read_bytes() == blob_data[offset:]

    @pytest.mark.anyio
    async def test_empty_blob_creates_empty_file(self, tmp_path, download_settings):
        """Test that a zero-length blob yields an empty file and no fetches."""
        fetcher = FakeRangeFetcher(b"")
        target = tmp_path / "empty.bin"
        target.write_bytes(b"stale content")
        downloader = ParallelRangeDownloader(fetcher, settings=download_settings)

        job = await downloader.download_to_file(target)

        assert target.read_bytes() == b""
        assert job.tasks == []
        assert fetcher.calls == []

    @pytest.mark.anyio
    async def test_offset_beyond_end(self, tmp_path, fake_fetcher, download_settings):
        """Test that an offset past the blob end is rejected."""
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)
        with pytest.raises(InvalidArgumentError):
            await downloader.download_to_file(tmp_path / "x", offset=100 * MIB)

    @pytest.mark.anyio
    async def test_invalid_range_size_before_network(
        self, tmp_path, fake_fetcher, download_settings
    ):
        """Test that a bad range size fails before any request."""
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(InvalidArgumentError):
            await downloader.download_to_file(
                tmp_path / "x", range_size=16 * MIB + 3
            )
        assert fake_fetcher.probes == 0
        assert fake_fetcher.calls == []

    @pytest.mark.anyio
    async def test_zero_concurrency_rejected(
        self, tmp_path, fake_fetcher, download_settings
    ):
        """Test that an explicit concurrency of zero is not replaced by the default."""
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(InvalidArgumentError, match="max_concurrency"):
            await downloader.download_to_file(tmp_path / "x", max_concurrency=0)
        assert fake_fetcher.probes == 0

    @pytest.mark.anyio
    async def test_md5_with_large_ranges_rejected(
        self, tmp_path, fake_fetcher, download_settings
    ):
        """Test that MD5 validation with 8 MiB ranges is refused up front."""
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(RangeAlignmentError):
            await downloader.download_to_file(
                tmp_path / "x", range_size=8 * MIB, use_transactional_md5=True
            )
        assert fake_fetcher.probes == 0

    @pytest.mark.anyio
    async def test_concurrency_bound(self, tmp_path, download_settings):
        """Test that no more than max_concurrency fetches run at once."""
        data = make_data(10 * 4 * MIB)
        fetcher = FakeRangeFetcher(data, chunk_size=1 * MIB, delay=0.001)
        target = tmp_path / "bounded.bin"
        downloader = ParallelRangeDownloader(fetcher, settings=download_settings)

        job = await downloader.download_to_file(target, max_concurrency=3)

        assert target.read_bytes() == data
        assert job.peak_in_flight <= 3
        assert fetcher.peak_in_flight <= 3
        assert job.peak_in_flight > 1
        assert job.in_flight == 0

    @pytest.mark.anyio
    async def test_progress_callback(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that progress reports end at the total length."""
        reports = []
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        await downloader.download_to_file(tmp_path / "p.bin", progress=reports.append)

        assert reports == sorted(reports)
        assert reports[-1] == len(blob_data)


class TestRetries:
    """Test retry handling for failing sub-ranges."""

    @pytest.mark.anyio
    async def test_transient_failures_are_retried(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that a sub-range succeeds after transient errors."""
        busy = FetchError("busy", status_code=503, transient=True)
        fake_fetcher.fail(4 * MIB, busy, TimeoutError())
        target = tmp_path / "retried.bin"
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        job = await downloader.download_to_file(target)

        assert target.read_bytes() == blob_data
        assert job.tasks[1].attempts == 3
        assert job.tasks[0].attempts == 1

    @pytest.mark.anyio
    async def test_retries_exhausted(self, tmp_path, fake_fetcher, download_settings):
        """Test that persistent transient errors end the job."""
        busy = FetchError("busy", status_code=503, transient=True)
        fake_fetcher.fail(8 * MIB, *[busy] * 5)
        downloader = ParallelRangeDownloader(
            fake_fetcher,
            settings=download_settings,
            retry=RetryPolicy(max_retries=2, backoff_base=0.0),
        )

        with pytest.raises(TransientDownloadError) as excinfo:
            await downloader.download_to_file(tmp_path / "x")
        assert excinfo.value.index == 2
        assert excinfo.value.attempts == 3
        assert excinfo.value.__cause__ is busy

    @pytest.mark.anyio
    async def test_short_read_resumes(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that a truncated response resumes after the written bytes."""
        fake_fetcher.fail(0, "truncate")
        target = tmp_path / "resumed.bin"
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        job = await downloader.download_to_file(target)

        assert target.read_bytes() == blob_data
        assert (2 * MIB, 2 * MIB) in fake_fetcher.calls
        assert job.tasks[0].attempts == 2

    @pytest.mark.anyio
    async def test_stalled_stream_resumes(self, tmp_path, blob_data, fake_fetcher):
        """Test that a stream without progress is abandoned and retried."""
        settings = DownloadSettings(
            range_size=4 * MIB, backoff_base=0.0, max_idle_seconds=0.2
        )
        fake_fetcher.fail(4 * MIB, "stall")
        target = tmp_path / "stalled.bin"
        downloader = ParallelRangeDownloader(fake_fetcher, settings=settings)

        with anyio.fail_after(10):
            job = await downloader.download_to_file(target)

        assert target.read_bytes() == blob_data
        assert job.tasks[1].attempts == 2

    @pytest.mark.anyio
    async def test_fatal_error_aborts(self, tmp_path, fake_fetcher, download_settings):
        """Test that a non-retryable error fails the job immediately."""
        forbidden = FetchError("forbidden", status_code=403, transient=False)
        fake_fetcher.fail(4 * MIB, forbidden)
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(FetchError) as excinfo:
            await downloader.download_to_file(tmp_path / "x")
        assert excinfo.value is forbidden
        assert fake_fetcher.calls.count((4 * MIB, 4 * MIB)) == 1

    @pytest.mark.anyio
    async def test_lowest_index_error_wins(
        self, tmp_path, fake_fetcher, download_settings
    ):
        """Test that simultaneous fatal errors surface the earliest range."""
        first = FetchError("first", status_code=404, transient=False)
        second = FetchError("second", status_code=403, transient=False)
        fake_fetcher.fail(4 * MIB, first)
        fake_fetcher.fail(8 * MIB, second)
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(FetchError) as excinfo:
            await downloader.download_to_file(tmp_path / "x")
        assert excinfo.value is first


class TestIntegrity:
    """Test ETag locking and transactional MD5."""

    @pytest.mark.anyio
    async def test_blob_change_is_detected(
        self, tmp_path, fake_fetcher, download_settings
    ):
        """Test that a new blob version mid-download raises ConsistencyError."""

        def replace_blob(offset, length):
            fake_fetcher.etag = '"0x8D0000000000002"'

        fake_fetcher.on_fetch = replace_blob
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(ConsistencyError):
            await downloader.download_to_file(tmp_path / "x")

    @pytest.mark.anyio
    async def test_md5_validated(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test a download with per-range MD5 validation."""
        target = tmp_path / "md5.bin"
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        job = await downloader.download_to_file(target, use_transactional_md5=True)

        assert target.read_bytes() == blob_data
        assert job.range_size == 4 * MIB

    @pytest.mark.anyio
    async def test_md5_mismatch(self, tmp_path, fake_fetcher, download_settings):
        """Test that a checksum mismatch raises SourceIntegrityError."""
        fake_fetcher.fail(0, "corrupt")
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(SourceIntegrityError):
            await downloader.download_to_file(
                tmp_path / "x", use_transactional_md5=True
            )

    @pytest.mark.anyio
    async def test_md5_short_read_restarts_range(
        self, tmp_path, blob_data, fake_fetcher, download_settings
    ):
        """Test that MD5 mode refetches a truncated range from its start."""
        fake_fetcher.fail(0, "truncate")
        target = tmp_path / "md5-retry.bin"
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        await downloader.download_to_file(target, use_transactional_md5=True)

        assert target.read_bytes() == blob_data
        assert fake_fetcher.calls.count((0, 4 * MIB)) == 2


class TestCancellation:
    """Test cooperative cancellation."""

    @pytest.mark.anyio
    async def test_cancelled_before_start(
        self, tmp_path, fake_fetcher, download_settings
    ):
        """Test that a pre-cancelled signal stops the job before any request."""
        signal = CancellationSignal()
        signal.cancel()
        downloader = ParallelRangeDownloader(fake_fetcher, settings=download_settings)

        with pytest.raises(OperationCanceledError):
            await downloader.download_to_file(tmp_path / "x", cancellation=signal)
        assert fake_fetcher.probes == 0

    @pytest.mark.anyio
    async def test_no_fetch_after_cancel(self, tmp_path, download_settings):
        """Test that no new sub-range starts once cancellation is observed."""
        fetcher = FakeRangeFetcher(make_data(6 * 4 * MIB))
        signal = CancellationSignal()

        def cancel_on_third(offset, length):
            if len(fetcher.calls) == 3:
                signal.cancel()

        fetcher.on_fetch = cancel_on_third
        target = tmp_path / "cancelled.bin"
        downloader = ParallelRangeDownloader(fetcher, settings=download_settings)

        with pytest.raises(OperationCanceledError):
            await downloader.download_to_file(
                target, max_concurrency=1, cancellation=signal
            )
        assert len(fetcher.calls) == 3
        assert target.exists()

    @pytest.mark.anyio
    async def test_cancel_interrupts_in_flight_fetch(self, tmp_path, blob_data):
        """Test that cancellation does not wait for slow transfers."""
        fetcher = FakeRangeFetcher(blob_data, delay=30.0)
        signal = CancellationSignal()
        settings = DownloadSettings(range_size=4 * MIB, max_idle_seconds=60.0)
        downloader = ParallelRangeDownloader(fetcher, settings=settings)

        async def cancel_soon():
            await anyio.sleep(0.1)
            signal.cancel()

        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(cancel_soon)
                with pytest.raises(OperationCanceledError):
                    await downloader.download_to_file(
                        tmp_path / "slow.bin", cancellation=signal
                    )
        assert fetcher.in_flight == 0
