"""
Object storage access for CDC exports.

``S3ObjectStore`` lists and fetches objects with boto3 (run in worker threads
so the event loop keeps multiplexing other tables); ``LocalObjectStore`` serves
the same layout from a directory for local runs and generated sample exports.

S3 failures are classified: throttling, 5xx and connection errors are
transient and retried with backoff; missing buckets/keys and credential
problems are fatal.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cdc_validator.config import Settings, get_settings
from cdc_validator.engine.abstract import ObjectInfo
from cdc_validator.errors import ObjectStoreError, TransientIOError
from cdc_validator.infrastructure.retry import RetryPolicy
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_FATAL_S3_CODES = frozenset(
    {
        "AccessDenied",
        "AllAccessDisabled",
        "InvalidAccessKeyId",
        "InvalidBucketName",
        "NoSuchBucket",
        "NoSuchKey",
        "SignatureDoesNotMatch",
    }
)


def classify_s3_error(exc: Exception, operation: str, target: str) -> Exception:
    """Map a boto error onto TransientIOError or ObjectStoreError."""
    details = {"operation": operation, "target": target, "cause": str(exc)}
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        details["code"] = code
        if code in _FATAL_S3_CODES or code in {"403", "404"}:
            return ObjectStoreError(f"S3 {operation} failed", details)
        return TransientIOError(f"S3 {operation} failed", details)
    return TransientIOError(f"S3 {operation} failed", details)


class S3ObjectStore:
    """
    S3-compatible object store using boto3.

    Supports AWS S3 and any S3-compatible endpoint (MinIO, LocalStack) through
    ``AWS_ENDPOINT_URL``. Credentials come from the standard boto3 chain.
    """

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required for the S3 object store")
        settings = settings or get_settings()
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=settings.aws_endpoint_url,
            region_name=settings.aws_region,
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    async def _call(self, operation: str, target: str, call: Callable[[], T]) -> T:
        async def _attempt() -> T:
            try:
                return await asyncio.to_thread(call)
            except (BotoCoreError, ClientError) as exc:
                raise classify_s3_error(exc, operation, target) from exc

        async for attempt in self.retry_policy.retrying((TransientIOError,)):
            with attempt:
                return await _attempt()
        raise AssertionError("unreachable")  # pragma: no cover

    def _list_pages(self, prefix: str, start_after: Optional[str]) -> List[ObjectInfo]:
        kwargs = {"Bucket": self.bucket, "Prefix": prefix}
        if start_after:
            kwargs["StartAfter"] = start_after
        objects: List[ObjectInfo] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(**kwargs):
            for obj in page.get("Contents", []):
                objects.append(
                    ObjectInfo(
                        key=obj["Key"],
                        last_modified=obj.get("LastModified"),
                        size=obj.get("Size", 0),
                    )
                )
        return objects

    async def list(self, prefix: str, start_after: Optional[str] = None) -> List[ObjectInfo]:
        objects = await self._call(
            "list", f"s3://{self.bucket}/{prefix}", lambda: self._list_pages(prefix, start_after)
        )
        log.debug(
            f"Listed {len(objects)} objects",
            extra={"bucket": self.bucket, "prefix": prefix, "start_after": start_after},
        )
        return objects

    async def fetch(self, key: str) -> bytes:
        def _get() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        return await self._call("fetch", f"s3://{self.bucket}/{key}", _get)


class LocalObjectStore:
    """
    Directory-backed object store: keys are POSIX paths relative to ``root``.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _walk(self, prefix: str, start_after: Optional[str]) -> List[ObjectInfo]:
        if not self.root.is_dir():
            raise ObjectStoreError("Local export root does not exist", {"root": str(self.root)})
        objects: List[ObjectInfo] = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(prefix):
                continue
            if start_after and key <= start_after:
                continue
            stat = path.stat()
            objects.append(
                ObjectInfo(
                    key=key,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    size=stat.st_size,
                )
            )
        return objects

    async def list(self, prefix: str, start_after: Optional[str] = None) -> List[ObjectInfo]:
        return await asyncio.to_thread(self._walk, prefix, start_after)

    async def fetch(self, key: str) -> bytes:
        path = self.root / key
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise ObjectStoreError("Object not found", {"key": key}) from exc
        except OSError as exc:
            raise TransientIOError("Could not read object", {"key": key, "cause": str(exc)}) from exc


__all__ = ["LocalObjectStore", "S3ObjectStore", "classify_s3_error"]
