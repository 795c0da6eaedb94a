"""
Tenant-prefixed object storage.

Every object key lives under ``tenants/{tenant_id}/``; every operation on
an existing key checks that prefix against the caller's tenant before the
S3 call is made.

Key layout:
    tenants/{tenant}/{env}/{type}/{YYYY}/{MM}/{name}-{ts}-{rand}{.ext}
"""

from datetime import datetime, timezone
from typing import Any, Callable
import asyncio
import logging
import os
import random
import re

import boto3
from botocore.exceptions import ClientError

from .context import current
from .errors import CrossTenantDenied, TenantRequired

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")
_UNSAFE_SEGMENTS = frozenset({"", ".", ".."})


def tenant_prefix(tenant_id: str) -> str:
    return f"tenants/{tenant_id}/"


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_CHARS.sub("-", filename)


def build_object_key(
    tenant_id: str,
    env: str,
    file_type: str,
    filename: str,
    now: datetime | None = None,
    rand: int | None = None,
) -> str:
    """Build a unique, tenant-prefixed object key.

    Raises:
        TenantRequired: If ``tenant_id`` is empty.
    """
    if not tenant_id:
        raise TenantRequired(message="A tenant is required to build an object key")
    now = now or datetime.now(timezone.utc)
    if rand is None:
        rand = random.randint(0, 10**9)
    name, ext = os.path.splitext(sanitize_filename(filename))
    ts = int(now.timestamp() * 1000)
    return (
        f"{tenant_prefix(tenant_id)}{env}/{sanitize_filename(file_type)}/"
        f"{now.year:04d}/{now.month:02d}/{name}-{ts}-{rand}{ext}"
    )


def key_belongs_to(key: str, tenant_id: str | None) -> bool:
    """Whether ``key`` lies under the tenant prefix.

    Keys with empty, ``.`` or ``..`` segments never belong to anyone.
    """
    if not (key and tenant_id) or not key.startswith(tenant_prefix(tenant_id)):
        return False
    return all(segment not in _UNSAFE_SEGMENTS for segment in key.split("/"))


def assert_key_access(key: str, tenant_id: str | None) -> None:
    """Raise ``CrossTenantDenied`` unless ``key`` is under the tenant prefix."""
    if not key_belongs_to(key, tenant_id):
        logger.warning(f"Object key {key!r} refused for tenant {tenant_id}")
        raise CrossTenantDenied(
            message="File does not belong to this tenant",
            details={"key": key},
        )


def create_s3_client(settings: Any) -> Any:
    """Create a boto3 S3 client from settings (custom endpoint optional)."""
    kwargs: dict[str, Any] = {"region_name": settings.AWS_REGION}
    if settings.S3_ENDPOINT:
        kwargs["endpoint_url"] = settings.S3_ENDPOINT
    return boto3.client("s3", **kwargs)


class TenantObjectStore:
    """Tenant-checked wrapper around a boto3 S3 client.

    The blocking boto3 calls run in a worker thread. ``tenant_id`` arguments
    default to the current context's tenant.

    Attributes:
        client: boto3 S3 client (or anything with the same methods).
        bucket: Bucket name.
        env: Environment segment of generated keys.
        url_ttl: Default lifetime of signed URLs in seconds.
    """

    def __init__(self, client: Any, bucket: str, env: str = "development", url_ttl: int = 3600):
        self.client = client
        self.bucket = bucket
        self.env = env
        self.url_ttl = url_ttl

    @classmethod
    def from_settings(cls, settings: Any, client: Any | None = None) -> "TenantObjectStore":
        return cls(
            client or create_s3_client(settings),
            bucket=settings.S3_BUCKET,
            env=settings.ENVIRONMENT,
            url_ttl=settings.SIGNED_URL_TTL_SECONDS,
        )

    @staticmethod
    def _tenant(tenant_id: str | None) -> str:
        tenant_id = tenant_id or current().tenant_id
        if not tenant_id:
            raise TenantRequired(message="A tenant is required for file access")
        return tenant_id

    async def _run(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, **kwargs)

    async def upload(
        self,
        body: bytes,
        filename: str,
        content_type: str = "application/octet-stream",
        file_type: str = "others",
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        tenant_id = self._tenant(tenant_id)
        key = build_object_key(tenant_id, self.env, file_type, filename)
        await self._run(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
            Metadata={
                "tenant-id": tenant_id,
                "original-name": filename,
                "uploaded-at": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(f"Uploaded {key} ({len(body)} bytes)")
        return {"key": key, "bucket": self.bucket, "size": len(body), "content_type": content_type}

    async def signed_upload_url(
        self,
        filename: str,
        content_type: str = "application/octet-stream",
        file_type: str = "others",
        tenant_id: str | None = None,
        expires_in: int | None = None,
    ) -> dict[str, Any]:
        tenant_id = self._tenant(tenant_id)
        key = build_object_key(tenant_id, self.env, file_type, filename)
        expires_in = expires_in or self.url_ttl
        url = await self._run(
            self.client.generate_presigned_url,
            ClientMethod="put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )
        return {"url": url, "key": key, "expires_in": expires_in}

    async def signed_download_url(
        self, key: str, tenant_id: str | None = None, expires_in: int | None = None
    ) -> str:
        assert_key_access(key, self._tenant(tenant_id))
        return await self._run(
            self.client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in or self.url_ttl,
        )

    async def head(self, key: str, tenant_id: str | None = None) -> dict[str, Any]:
        assert_key_access(key, self._tenant(tenant_id))
        response = await self._run(self.client.head_object, Bucket=self.bucket, Key=key)
        return {
            "key": key,
            "size": response.get("ContentLength"),
            "content_type": response.get("ContentType"),
            "last_modified": response.get("LastModified"),
            "metadata": response.get("Metadata", {}),
        }

    async def exists(self, key: str, tenant_id: str | None = None) -> bool:
        """Whether the object exists; keys of other tenants read as absent."""
        if not key_belongs_to(key, self._tenant(tenant_id)):
            return False
        try:
            await self._run(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                return False
            raise
        return True

    async def delete(self, key: str, tenant_id: str | None = None) -> None:
        assert_key_access(key, self._tenant(tenant_id))
        await self._run(self.client.delete_object, Bucket=self.bucket, Key=key)
        logger.info(f"Deleted {key}")

    async def list_keys(self, tenant_id: str | None = None, file_type: str | None = None,
                        max_keys: int = 1000) -> list[dict[str, Any]]:
        prefix = tenant_prefix(self._tenant(tenant_id))
        if file_type:
            prefix = f"{prefix}{self.env}/{sanitize_filename(file_type)}/"
        response = await self._run(
            self.client.list_objects_v2, Bucket=self.bucket, Prefix=prefix, MaxKeys=max_keys
        )
        return [
            {"key": obj["Key"], "size": obj.get("Size", 0), "last_modified": obj.get("LastModified")}
            for obj in response.get("Contents", [])
        ]
