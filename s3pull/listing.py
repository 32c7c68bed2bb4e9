from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from .retry import RetryPolicy
from .s3 import ObjectClient, ObjectInfo

logger = logging.getLogger(__name__)


class ListingError(Exception):
    """The object set could not be enumerated completely."""


class ObjectLister:
    """Pages through every object under ``bucket``/``prefix``.

    Iterate with ``async for``; each page is fetched in a worker thread and
    a failing page is retried according to ``retry_policy`` before the
    listing gives up with :class:`ListingError`. Directory placeholder keys
    (ending in ``/``) are not yielded.
    """

    def __init__(
        self,
        client: ObjectClient,
        bucket: str,
        prefix: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.prefix = prefix or ""
        self.retry_policy = retry_policy or RetryPolicy()
        self.pages_fetched = 0
        self.objects_listed = 0
        self._started = False

    def __aiter__(self) -> AsyncIterator[ObjectInfo]:
        if self._started:
            raise RuntimeError("listing can only be consumed once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ObjectInfo]:
        token: Optional[str] = None
        while True:
            objects, token = await self._fetch_page(token)
            for info in objects:
                if info.key.endswith("/"):
                    continue
                self.objects_listed += 1
                yield info
            if token is None:
                break

    async def _fetch_page(
        self, token: Optional[str]
    ) -> tuple[list[ObjectInfo], Optional[str]]:
        state = self.retry_policy.start()
        while True:
            state.begin()
            try:
                objects, next_token = await asyncio.to_thread(
                    self.client.list_page, self.bucket, self.prefix, token
                )
            except Exception as exc:
                delay = state.failed(exc)
                if delay is None:
                    raise ListingError(
                        f"listing s3://{self.bucket}/{self.prefix} failed after "
                        f"{state.attempts} attempt(s): {state.reason}"
                    ) from exc
                logger.warning(
                    "Listing page %d of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.pages_fetched + 1,
                    self.bucket,
                    state.attempts,
                    self.retry_policy.max_attempts,
                    delay,
                    state.reason,
                )
                await asyncio.sleep(delay)
                continue
            self.pages_fetched += 1
            logger.debug(
                "Listed page %d of %s: %d objects",
                self.pages_fetched,
                self.bucket,
                len(objects),
            )
            return objects, next_token
