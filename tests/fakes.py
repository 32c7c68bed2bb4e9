import io
import threading
import time
from collections import Counter
from typing import Optional

from botocore.exceptions import ClientError

from s3pull.s3 import ObjectInfo, PermanentError, TransientError


def client_error(code: str, status: int, operation: str = "GetObject") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def not_found(key: str) -> PermanentError:
    return PermanentError(f"NoSuchKey: {key}")


def throttled() -> TransientError:
    return TransientError("SlowDown: please reduce your request rate")


class FakeObjectClient:
    """In-memory object client that counts calls and can inject failures."""

    def __init__(
        self,
        objects: Optional[dict[str, bytes]] = None,
        page_size: int = 1000,
        get_delay: float = 0.0,
    ) -> None:
        self.objects: dict[str, bytes] = dict(objects or {})
        self.page_size = page_size
        self.get_delay = get_delay
        self.calls: Counter = Counter()
        self.call_log: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.always_fail: dict[tuple[str, str], Exception] = {}
        self.list_failures: list[Exception] = []
        self.active = 0
        self.peak_active = 0
        self._lock = threading.Lock()

    def fail(self, op: str, key: str, *errors: Exception) -> None:
        self.failures.setdefault((op, key), []).extend(errors)

    def fail_always(self, op: str, key: str, error: Exception) -> None:
        self.always_fail[(op, key)] = error

    def _record(self, op: str, key: str) -> None:
        with self._lock:
            self.calls[(op, key)] += 1
            self.call_log.append((op, key))
            if (op, key) in self.always_fail:
                raise self.always_fail[(op, key)]
            pending = self.failures.get((op, key))
            if pending:
                raise pending.pop(0)

    def list_page(self, bucket, prefix, token):
        with self._lock:
            self.calls[("list", token or "")] += 1
            if self.list_failures:
                raise self.list_failures.pop(0)
        keys = sorted(key for key in self.objects if key.startswith(prefix or ""))
        start = int(token) if token else 0
        end = start + self.page_size
        page = [
            ObjectInfo(key=key, size=len(self.objects[key]), last_modified=None)
            for key in keys[start:end]
        ]
        next_token = str(end) if end < len(keys) else None
        return page, next_token

    def get(self, bucket, key):
        self._record("get", key)
        with self._lock:
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        try:
            if self.get_delay:
                time.sleep(self.get_delay)
            if key not in self.objects:
                raise not_found(key)
            return io.BytesIO(self.objects[key])
        finally:
            with self._lock:
                self.active -= 1

    def head(self, bucket, key):
        self._record("head", key)
        return key in self.objects

    def put(self, bucket, key, body):
        self._record("put", key)
        data = body.read()
        with self._lock:
            self.objects[key] = data

    def count(self, op: str, key: Optional[str] = None) -> int:
        if key is not None:
            return self.calls[(op, key)]
        return sum(value for (name, _), value in self.calls.items() if name == op)


class ListingOf:
    """Async iterable over a fixed list of descriptors."""

    def __init__(self, objects: list[ObjectInfo]) -> None:
        self._objects = list(objects)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for info in self._objects:
            yield info
