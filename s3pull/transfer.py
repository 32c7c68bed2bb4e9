from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Optional

from .retry import RetryPolicy, RetryState
from .s3 import (
    LocalIOError,
    ObjectClient,
    ObjectInfo,
    ObjectStoreError,
    PermanentError,
    classify_error,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

MODE_DOWNLOAD = "download"
MODE_DOWNLOAD_AND_SYNC = "download_and_sync"

OUTCOME_SUCCESS = "success"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"

STAGE_DOWNLOAD = "download"
STAGE_CHECK = "check"
STAGE_UPLOAD = "upload"
STAGE_CANCELLED = "cancelled"


@dataclass(frozen=True)
class TransferTask:
    descriptor: ObjectInfo
    local_path: Path
    mode: str = MODE_DOWNLOAD
    destination_key: Optional[str] = None

    @property
    def key(self) -> str:
        return self.descriptor.key


@dataclass(frozen=True)
class TransferResult:
    key: str
    outcome: str
    bytes_transferred: int = 0
    attempts: int = 0
    reason: Optional[str] = None
    stage: str = STAGE_DOWNLOAD

    @property
    def failed(self) -> bool:
        return self.outcome == OUTCOME_FAILED


def local_path_for_key(root: Path | str, key: str) -> Path:
    """Map an object key onto a path under ``root``.

    Keys that cannot be represented as a distinct relative path (absolute
    keys, empty or dot segments) are rejected so two keys never share a path.
    """
    if not key or "\x00" in key:
        raise PermanentError(f"malformed key {key!r}")
    parts = key.split("/")
    for part in parts:
        if part in {"", ".", ".."}:
            raise PermanentError(f"malformed key {key!r}")
        if os.sep != "/" and os.sep in part:
            raise PermanentError(f"malformed key {key!r}")
    return Path(root).joinpath(*parts)


def destination_key(
    key: str, source_prefix: Optional[str], upload_prefix: Optional[str]
) -> str:
    """Key an object is mirrored to; ``upload_prefix`` replaces ``source_prefix``."""
    if upload_prefix is None:
        return key
    source_prefix = source_prefix or ""
    relative = key[len(source_prefix) :] if key.startswith(source_prefix) else key
    return f"{upload_prefix}{relative}"


def build_task(
    descriptor: ObjectInfo,
    root: Path | str,
    mode: str = MODE_DOWNLOAD,
    source_prefix: Optional[str] = None,
    upload_prefix: Optional[str] = None,
) -> TransferTask:
    dest_key = None
    if mode == MODE_DOWNLOAD_AND_SYNC:
        dest_key = destination_key(descriptor.key, source_prefix, upload_prefix)
    return TransferTask(
        descriptor=descriptor,
        local_path=local_path_for_key(root, descriptor.key),
        mode=mode,
        destination_key=dest_key,
    )


class _StageWorker:
    stage = STAGE_DOWNLOAD

    def __init__(
        self,
        client: ObjectClient,
        bucket: str,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.retry_policy = retry_policy or RetryPolicy()

    async def _call(
        self, state: RetryState, key: str, func: Callable[..., Any], *args: Any
    ) -> tuple[bool, Any]:
        """Run ``func`` in a thread until it succeeds or ``state`` gives up."""
        while True:
            state.begin()
            try:
                return True, await asyncio.to_thread(func, *args)
            except Exception as exc:
                delay = state.failed(exc)
            if delay is None:
                return False, None
            logger.debug(
                "%s of %s failed (attempt %d/%d), retrying in %.2fs: %s",
                self.stage,
                key,
                state.attempts,
                self.retry_policy.max_attempts,
                delay,
                state.reason,
            )
            await asyncio.sleep(delay)


class DownloadWorker(_StageWorker):
    """Fetches one object and writes it atomically to its local path."""

    stage = STAGE_DOWNLOAD

    async def run(self, task: TransferTask) -> TransferResult:
        state = self.retry_policy.start()
        ok, written = await self._call(state, task.key, self._download_once, task)
        if not ok:
            return TransferResult(
                key=task.key,
                outcome=OUTCOME_FAILED,
                attempts=state.attempts,
                reason=state.reason,
                stage=self.stage,
            )
        return TransferResult(
            key=task.key,
            outcome=OUTCOME_SUCCESS,
            bytes_transferred=written,
            attempts=state.attempts,
            stage=self.stage,
        )

    def _download_once(self, task: TransferTask) -> int:
        stream = self.client.get(self.bucket, task.key)
        try:
            return write_atomically(stream, task.local_path)
        finally:
            stream.close()


def _read_chunk(stream) -> bytes:
    try:
        return stream.read(CHUNK_SIZE)
    except ObjectStoreError:
        raise
    except Exception as exc:
        raise classify_error(exc) from exc


def write_atomically(stream, destination: Path) -> int:
    """Copy ``stream`` into ``destination`` via a temporary sibling file.

    The final path only ever holds a complete copy; the temporary file is
    removed when reading or writing fails.
    """
    temp_path = destination.with_name(
        f".{destination.name}.{uuid.uuid4().hex[:12]}.part"
    )
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        handle = open(temp_path, "xb")
    except OSError as exc:
        raise LocalIOError(f"cannot create {destination}: {exc}") from exc
    written = 0
    try:
        with handle:
            while True:
                chunk = _read_chunk(stream)
                if not chunk:
                    break
                handle.write(chunk)
                written += len(chunk)
        os.replace(temp_path, destination)
    except OSError as exc:
        _remove_quietly(temp_path)
        raise LocalIOError(f"cannot write {destination}: {exc}") from exc
    except BaseException:
        _remove_quietly(temp_path)
        raise
    return written


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temporary file %s: %s", path, exc)


class SyncWorker(_StageWorker):
    """Mirrors a downloaded object into the destination bucket when absent."""

    stage = STAGE_UPLOAD

    async def run(
        self, task: TransferTask, downloaded: TransferResult
    ) -> TransferResult:
        key = task.destination_key or task.key
        check = self.retry_policy.start()
        ok, exists = await self._call(check, key, self.client.head, self.bucket, key)
        attempts = downloaded.attempts + check.attempts
        if not ok:
            return replace(
                downloaded,
                outcome=OUTCOME_FAILED,
                attempts=attempts,
                reason=check.reason,
                stage=STAGE_CHECK,
            )
        if exists:
            logger.debug("%s already present in %s, skipping upload", key, self.bucket)
            return replace(
                downloaded,
                outcome=OUTCOME_SKIPPED,
                attempts=attempts,
                stage=STAGE_CHECK,
            )

        upload = self.retry_policy.start()
        ok, uploaded = await self._call(
            upload, key, self._upload_once, task.local_path, key
        )
        attempts += upload.attempts
        if not ok:
            return replace(
                downloaded,
                outcome=OUTCOME_FAILED,
                attempts=attempts,
                reason=upload.reason,
                stage=STAGE_UPLOAD,
            )
        return replace(
            downloaded,
            outcome=OUTCOME_SUCCESS,
            bytes_transferred=downloaded.bytes_transferred + uploaded,
            attempts=attempts,
            stage=STAGE_UPLOAD,
        )

    def _upload_once(self, path: Path, key: str) -> int:
        try:
            handle = open(path, "rb")
        except OSError as exc:
            raise LocalIOError(f"cannot read {path}: {exc}") from exc
        with handle:
            size = os.fstat(handle.fileno()).st_size
            self.client.put(self.bucket, key, handle)
        return size
