"""
S3 result storage.

Writes the final execution payload as JSON next to the source document:

    s3://<bucket>/results/<key>.json

The location is derived only from the DocumentRef, so downstream consumers
can find a document's result without consulting the execution store.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aioboto3
from botocore.exceptions import ClientError

from docpipe.clients.base import StoredObject

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


def result_key(key: str, prefix: str = "results/") -> str:
    """Deterministic output key for a source object key."""
    return f"{prefix}{key}.json"


class S3ResultWriter:
    """Async S3 writer for output artifacts."""

    def __init__(
        self,
        region: str = "us-east-1",
        session: aioboto3.Session | None = None,
        credentials: dict[str, str] | None = None,
    ) -> None:
        self._region = region
        self._session = session or aioboto3.Session(**(credentials or {}))

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    async def put_json(self, bucket: str, key: str, document: dict[str, Any]) -> StoredObject:
        body = json.dumps(document, indent=2, default=str).encode("utf-8")

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType=JSON_CONTENT_TYPE,
            )

        logger.info("S3 result written | bucket=%s key=%s size=%d", bucket, key, len(body))

        return StoredObject(
            bucket=bucket,
            key=key,
            size_bytes=len(body),
            content_type=JSON_CONTENT_TYPE,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_json(self, bucket: str, key: str) -> dict[str, Any]:
        """Read back a stored result."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                raw = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: s3://{bucket}/{key}") from exc
                raise
        return json.loads(raw)
