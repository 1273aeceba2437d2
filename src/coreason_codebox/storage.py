# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles
import anyio
import boto3
from botocore.exceptions import ClientError
from loguru import logger

from coreason_codebox.models import AuditEntry, AuditFilter


@runtime_checkable
class AuditStore(Protocol):
    """Durable, append-only destination for audit entries."""

    async def write(self, entry: AuditEntry) -> None: ...

    async def query(self, audit_filter: AuditFilter) -> list[AuditEntry]: ...

    async def purge(self, older_than: datetime) -> int: ...


def _utc_day(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


class JsonlAuditStore:
    """Appends one JSON document per line to a local file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = anyio.Lock()

    async def write(self, entry: AuditEntry) -> None:
        line = entry.model_dump_json() + "\n"
        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, mode="a", encoding="utf-8") as f:
                await f.write(line)

    async def load(self) -> list[AuditEntry]:
        """Reads every entry back, skipping lines that fail to parse."""
        if not self.path.exists():
            return []
        entries: list[AuditEntry] = []
        async with aiofiles.open(self.path, mode="r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable audit line in {self.path}: {e}")
        return entries

    async def query(self, audit_filter: AuditFilter) -> list[AuditEntry]:
        return audit_filter.apply(await self.load())

    async def purge(self, older_than: datetime) -> int:
        """Rewrites the file without entries that started before `older_than`."""
        async with self._lock:
            entries = await self.load()
            kept = [e for e in entries if e.start_time >= older_than]
            removed = len(entries) - len(kept)
            if not removed:
                return 0
            staging = self.path.with_name(self.path.name + ".tmp")
            async with aiofiles.open(staging, mode="w", encoding="utf-8") as f:
                for entry in kept:
                    await f.write(entry.model_dump_json() + "\n")
            staging.replace(self.path)
        logger.info(f"Purged {removed} audit entries from {self.path}")
        return removed


class S3AuditStore:
    """S3 implementation of the AuditStore protocol. One immutable object per entry."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "sandbox-audit",
        region: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        endpoint_url: str | None = None,
    ):
        """Initializes the S3AuditStore backend.

        Args:
            bucket: The S3 bucket name.
            prefix: Key prefix for audit objects.
            region: Optional AWS region name.
            access_key: Optional AWS access key ID.
            secret_key: Optional AWS secret access key.
            endpoint_url: Optional endpoint URL for S3-compatible services (e.g., MinIO).
        """
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            endpoint_url=endpoint_url,
        )

    def object_key(self, entry: AuditEntry) -> str:
        day = entry.start_time.strftime("%Y/%m/%d")
        return f"{self.prefix}/{day}/{entry.execution_id}.json"

    def key_day(self, key: str) -> date | None:
        """Day encoded in an object key, or None for keys this store did not write."""
        rest = key[len(self.prefix) + 1 :]
        try:
            return datetime.strptime(rest[:10], "%Y/%m/%d").date()
        except ValueError:
            return None

    async def write(self, entry: AuditEntry) -> None:
        """Uploads the entry as a JSON object.

        Raises:
            ClientError: If the upload to S3 fails.
        """
        key = self.object_key(entry)
        body = entry.model_dump_json().encode("utf-8")

        def _put() -> None:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
            )

        try:
            await anyio.to_thread.run_sync(_put)
        except ClientError as e:
            logger.error(f"Failed to write audit entry to s3://{self.bucket}/{key}: {e}")
            raise

    def _list_keys(self) -> list[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}/"):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def _read(self, key: str) -> AuditEntry | None:
        body = self.client.get_object(Bucket=self.bucket, Key=key)["Body"].read()
        try:
            return AuditEntry.model_validate_json(body)
        except ValueError as e:
            logger.warning(f"Skipping unreadable audit object s3://{self.bucket}/{key}: {e}")
            return None

    async def query(self, audit_filter: AuditFilter) -> list[AuditEntry]:
        """Lists entries under the prefix, fetching only the days the filter can match.

        Raises:
            ClientError: If listing or reading from S3 fails.
        """
        first = _utc_day(audit_filter.since) if audit_filter.since else None
        last = _utc_day(audit_filter.until) if audit_filter.until else None

        def _query() -> list[AuditEntry]:
            entries: list[AuditEntry] = []
            for key in self._list_keys():
                day = self.key_day(key)
                if day is None:
                    continue
                if (first and day < first) or (last and day > last):
                    continue
                entry = self._read(key)
                if entry is not None:
                    entries.append(entry)
            return audit_filter.apply(entries)

        try:
            return await anyio.to_thread.run_sync(_query)
        except ClientError as e:
            logger.error(f"Failed to query audit entries in s3://{self.bucket}/{self.prefix}: {e}")
            raise

    async def purge(self, older_than: datetime) -> int:
        """Deletes objects for entries that started before `older_than`.

        Raises:
            ClientError: If listing or deleting from S3 fails.
        """
        cutoff_day = _utc_day(older_than)

        def _purge() -> int:
            stale: list[str] = []
            for key in self._list_keys():
                day = self.key_day(key)
                if day is None or day > cutoff_day:
                    continue
                if day == cutoff_day:
                    entry = self._read(key)
                    if entry is None or entry.start_time >= older_than:
                        continue
                stale.append(key)
            # delete_objects accepts at most 1000 keys per call.
            for i in range(0, len(stale), 1000):
                batch = stale[i : i + 1000]
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            return len(stale)

        try:
            removed = await anyio.to_thread.run_sync(_purge)
        except ClientError as e:
            logger.error(f"Failed to purge audit entries in s3://{self.bucket}/{self.prefix}: {e}")
            raise
        if removed:
            logger.info(f"Purged {removed} audit objects from s3://{self.bucket}/{self.prefix}")
        return removed
