from __future__ import annotations

import asyncio
import logging
import signal
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import AsyncIterable, Optional

from .config import DEFAULT_CONCURRENCY
from .listing import ListingError
from .retry import RetryPolicy
from .s3 import ObjectClient, ObjectInfo, PermanentError
from .summary import OutcomeAggregator, ResultCallback, RunSummary
from .transfer import (
    MODE_DOWNLOAD,
    MODE_DOWNLOAD_AND_SYNC,
    OUTCOME_FAILED,
    OUTCOME_SUCCESS,
    STAGE_CANCELLED,
    STAGE_DOWNLOAD,
    DownloadWorker,
    SyncWorker,
    TransferResult,
    build_task,
)

logger = logging.getLogger(__name__)

_DONE = object()


class TransferScheduler:
    """Fans listed objects out to a fixed pool of ``concurrency`` workers.

    Every descriptor read from the listing produces exactly one
    :class:`TransferResult`. When ``destination`` and ``upload_bucket`` are
    given, each successfully downloaded object also goes through the sync
    stage against the destination bucket.
    """

    def __init__(
        self,
        source: ObjectClient,
        bucket: str,
        download_root: Path | str,
        *,
        prefix: Optional[str] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry_policy: Optional[RetryPolicy] = None,
        destination: Optional[ObjectClient] = None,
        upload_bucket: Optional[str] = None,
        upload_prefix: Optional[str] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if (destination is None) != (upload_bucket is None):
            raise ValueError("destination client and upload bucket go together")
        self.bucket = bucket
        self.prefix = prefix or ""
        self.download_root = Path(download_root)
        self.concurrency = concurrency
        self.upload_prefix = upload_prefix
        self.on_result = on_result
        policy = retry_policy or RetryPolicy()
        self.downloader = DownloadWorker(source, bucket, policy)
        self.syncer: Optional[SyncWorker] = None
        if destination is not None and upload_bucket is not None:
            self.syncer = SyncWorker(destination, upload_bucket, policy)
        self.mode = MODE_DOWNLOAD_AND_SYNC if self.syncer else MODE_DOWNLOAD
        self.summary: Optional[RunSummary] = None
        self.active = 0
        self.peak_active = 0
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        logger.warning(
            "Cancelling: in-flight transfers will finish, queued ones are dropped"
        )

    def run(self, listing: AsyncIterable[ObjectInfo]) -> RunSummary:
        """Blocking entry point: runs the whole transfer on a fresh event loop."""
        return asyncio.run(self._run_with_executor(listing))

    async def _run_with_executor(
        self, listing: AsyncIterable[ObjectInfo]
    ) -> RunSummary:
        loop = asyncio.get_running_loop()
        loop.set_default_executor(
            ThreadPoolExecutor(
                max_workers=self.concurrency + 1, thread_name_prefix="s3pull"
            )
        )
        installed: list[int] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.cancel)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(signum)
        try:
            return await self.run_async(listing)
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    async def run_async(self, listing: AsyncIterable[ObjectInfo]) -> RunSummary:
        queue: asyncio.Queue = asyncio.Queue()
        aggregator = OutcomeAggregator(self.on_result)
        consumer = asyncio.create_task(aggregator.consume())
        workers = [
            asyncio.create_task(self._worker(queue, aggregator))
            for _ in range(self.concurrency)
        ]
        listing_error: Optional[ListingError] = None
        try:
            await self._produce(listing, queue)
        except ListingError as exc:
            listing_error = exc
            logger.error("%s", exc)
            self.cancel()
        await asyncio.gather(*workers)
        aggregator.close()
        self.summary = await consumer
        if listing_error is not None:
            raise listing_error
        return self.summary

    async def _produce(
        self, listing: AsyncIterable[ObjectInfo], queue: asyncio.Queue
    ) -> None:
        try:
            async for info in listing:
                if self._cancelled:
                    break
                queue.put_nowait(info)
        finally:
            for _ in range(self.concurrency):
                queue.put_nowait(_DONE)

    async def _worker(
        self, queue: asyncio.Queue, aggregator: OutcomeAggregator
    ) -> None:
        while True:
            item = await queue.get()
            if item is _DONE:
                return
            if self._cancelled:
                aggregator.submit(
                    TransferResult(
                        key=item.key,
                        outcome=OUTCOME_FAILED,
                        reason="cancelled before transfer started",
                        stage=STAGE_CANCELLED,
                    )
                )
                continue
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
            try:
                result = await self._process(item)
            finally:
                self.active -= 1
            aggregator.submit(result)

    async def _process(self, info: ObjectInfo) -> TransferResult:
        try:
            task = build_task(
                info,
                self.download_root,
                self.mode,
                source_prefix=self.prefix,
                upload_prefix=self.upload_prefix,
            )
        except PermanentError as exc:
            return TransferResult(
                key=info.key,
                outcome=OUTCOME_FAILED,
                reason=exc.reason,
                stage=STAGE_DOWNLOAD,
            )
        try:
            result = await self.downloader.run(task)
            if result.outcome != OUTCOME_SUCCESS or self.syncer is None:
                return result
            return await self.syncer.run(task, result)
        except Exception as exc:
            logger.exception("Unexpected error transferring %s", info.key)
            return TransferResult(
                key=info.key,
                outcome=OUTCOME_FAILED,
                reason=f"{type(exc).__name__}: {exc}",
                stage=STAGE_DOWNLOAD,
            )
