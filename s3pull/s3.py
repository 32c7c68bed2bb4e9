from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Optional, Protocol

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    CredentialRetrievalError,
    HTTPClientError,
    IncompleteReadError,
    NoCredentialsError,
    PartialCredentialsError,
    ProfileNotFound,
    ReadTimeoutError,
    ResponseStreamingError,
)

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequests",
    "RequestLimitExceeded",
    "BandwidthLimitExceeded",
    "PriorRequestNotComplete",
}
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

# Multipart uploads run on the calling worker thread; the scheduler owns concurrency
UPLOAD_CONFIG = TransferConfig(use_threads=False)


class ObjectStoreError(Exception):
    """Base class for failures reported by an object client."""

    transient = False

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TransientError(ObjectStoreError):
    """Retry-eligible failure: network errors, timeouts, 5xx, throttling."""

    transient = True


class PermanentError(ObjectStoreError):
    """Failure that no amount of retrying will fix."""


class LocalIOError(PermanentError):
    """Writing or reading the local copy of an object failed."""


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    last_modified: Optional[datetime]
    storage_class: Optional[str] = None


class ObjectClient(Protocol):
    def list_page(
        self, bucket: str, prefix: str, token: Optional[str]
    ) -> tuple[list[ObjectInfo], Optional[str]]: ...

    def get(self, bucket: str, key: str) -> BinaryIO: ...

    def head(self, bucket: str, key: str) -> bool: ...

    def put(self, bucket: str, key: str, body: BinaryIO) -> None: ...


def is_sso_expired_error(exc: BaseException) -> bool:
    text = f"{type(exc).__name__}: {exc}".lower()
    markers = [
        "unauthorizedssotokenerror",
        "sso session",
        "sso token",
        "token has expired",
        "token is expired",
        "expiredtoken",
        "error loading sso token",
        "aws sso login",
    ]
    return any(marker in text for marker in markers)


def _client_error_code(exc: ClientError) -> tuple[str, Optional[int]]:
    response = exc.response if isinstance(exc.response, dict) else {}
    code = str(response.get("Error", {}).get("Code", "") or "")
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if not isinstance(status, int):
        status = int(code) if code.isdigit() else None
    return code, status


def classify_error(exc: BaseException) -> ObjectStoreError:
    """Map a boto3/botocore exception onto the transient/permanent split."""
    if isinstance(exc, ObjectStoreError):
        return exc
    if isinstance(exc, S3UploadFailedError):
        # boto3 re-raises the underlying ClientError inside its except block
        underlying = exc.__cause__ or exc.__context__
        if underlying is not None:
            return classify_error(underlying)
    reason = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, ClientError):
        code, status = _client_error_code(exc)
        if is_sso_expired_error(exc) or code in {"ExpiredToken", "InvalidAccessKeyId"}:
            return PermanentError(reason)
        if code in TRANSIENT_ERROR_CODES:
            return TransientError(reason)
        if status is not None and (status >= 500 or status == 429):
            return TransientError(reason)
        return PermanentError(reason)
    if isinstance(
        exc,
        (
            NoCredentialsError,
            PartialCredentialsError,
            CredentialRetrievalError,
            ProfileNotFound,
        ),
    ):
        return PermanentError(reason)
    if is_sso_expired_error(exc):
        return PermanentError(reason)
    if isinstance(
        exc,
        (
            BotoConnectionError,
            HTTPClientError,
            IncompleteReadError,
            ReadTimeoutError,
            ResponseStreamingError,
        ),
    ):
        return TransientError(reason)
    if isinstance(exc, BotoCoreError):
        return PermanentError(reason)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return TransientError(reason)
    return PermanentError(reason)


def is_not_found(exc: ClientError) -> bool:
    code, status = _client_error_code(exc)
    return code in NOT_FOUND_CODES or status == 404


class _ClassifiedStream:
    """Wraps a botocore StreamingBody so read failures come out classified."""

    def __init__(self, body) -> None:
        self._body = body

    def read(self, amt: Optional[int] = None) -> bytes:
        try:
            return self._body.read(amt)
        except Exception as exc:
            raise classify_error(exc) from exc

    def close(self) -> None:
        try:
            self._body.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing response body: %s", exc)


class S3ObjectClient:
    """boto3-backed object client bound to one profile and region."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        max_pool_connections: int = 10,
    ) -> None:
        self.profile = self._normalize_profile(profile)
        self._region = region
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            max_pool_connections=max(10, max_pool_connections),
            retries={"total_max_attempts": 1},
        )
        self._s3 = None
        self._credentials = None

    def _normalize_profile(self, profile: Optional[str]) -> Optional[str]:
        if profile is None:
            return None
        normalized = profile.strip()
        if not normalized or normalized == "default":
            return None
        return normalized

    def _profile_label(self) -> str:
        return self.profile or "default"

    def _client(self):
        if self._s3 is not None:
            return self._s3
        try:
            if self.profile is None:
                session = boto3.session.Session()
            else:
                session = boto3.session.Session(profile_name=self.profile)
            credentials = session.get_credentials()
            if self._region:
                client = session.client(
                    "s3", region_name=self._region, config=self._config
                )
            else:
                client = session.client("s3", config=self._config)
        except Exception as exc:
            raise classify_error(exc) from exc
        if credentials is None:
            raise PermanentError(
                f"NoCredentialsError: no credentials found for profile "
                f"{self._profile_label()}"
            )
        self._credentials = credentials
        self._s3 = client
        return client

    def check_credentials(self) -> None:
        """Resolve credentials now so expired SSO sessions fail before any transfer."""
        self._client()
        if self._credentials is None:
            return
        try:
            self._credentials.get_frozen_credentials()
        except Exception as exc:
            raise classify_error(exc) from exc

    @property
    def region(self) -> Optional[str]:
        return self._client().meta.region_name

    def describe(self) -> str:
        return f"profile={self._profile_label()} region={self.region or 'unset'}"

    def list_page(
        self, bucket: str, prefix: str, token: Optional[str]
    ) -> tuple[list[ObjectInfo], Optional[str]]:
        client = self._client()
        kwargs = {
            "Bucket": bucket,
            "Prefix": prefix or "",
            "MaxKeys": LIST_PAGE_SIZE,
        }
        if token:
            kwargs["ContinuationToken"] = token
        try:
            response = client.list_objects_v2(**kwargs)
        except Exception as exc:
            raise classify_error(exc) from exc
        objects: list[ObjectInfo] = []
        for entry in response.get("Contents", []):
            key = entry.get("Key")
            if not key:
                continue
            objects.append(
                ObjectInfo(
                    key=key,
                    size=int(entry.get("Size", 0)),
                    last_modified=entry.get("LastModified"),
                    storage_class=entry.get("StorageClass"),
                )
            )
        next_token: Optional[str] = None
        if response.get("IsTruncated"):
            next_token = response.get("NextContinuationToken")
            if not next_token:
                raise TransientError(
                    f"truncated listing of {bucket} returned no continuation token"
                )
        return objects, next_token

    def get(self, bucket: str, key: str) -> _ClassifiedStream:
        client = self._client()
        try:
            response = client.get_object(Bucket=bucket, Key=key)
        except Exception as exc:
            raise classify_error(exc) from exc
        body = response.get("Body")
        if body is None:
            raise TransientError(f"get_object for {key} returned no body")
        return _ClassifiedStream(body)

    def head(self, bucket: str, key: str) -> bool:
        client = self._client()
        try:
            client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                return False
            raise classify_error(exc) from exc
        except Exception as exc:
            raise classify_error(exc) from exc
        return True

    def put(self, bucket: str, key: str, body: BinaryIO) -> None:
        """Upload ``body``; objects above the multipart threshold go up in parts."""
        client = self._client()
        try:
            client.upload_fileobj(body, bucket, key, Config=UPLOAD_CONFIG)
        except Exception as exc:
            raise classify_error(exc) from exc
