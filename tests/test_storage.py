"""Tests for supportdesk.multitenancy.storage - tenant-prefixed object keys."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from supportdesk.multitenancy.context import with_tenant
from supportdesk.multitenancy.errors import CrossTenantDenied, TenantRequired
from supportdesk.multitenancy.storage import (
    TenantObjectStore,
    assert_key_access,
    build_object_key,
    key_belongs_to,
    sanitize_filename,
)

T1_KEY = "tenants/t1/test/documents/2026/03/report-1-2.pdf"


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "HeadObject")


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://s3.test/signed"
    client.head_object.return_value = {"ContentLength": 12, "ContentType": "application/pdf", "Metadata": {"tenant-id": "t1"}}
    client.list_objects_v2.return_value = {"Contents": [{"Key": T1_KEY, "Size": 12}]}
    return client


@pytest.fixture
def store(client) -> TenantObjectStore:
    return TenantObjectStore(client, bucket="files", env="test")


# ===========================================================================
# Key helpers
# ===========================================================================

class TestObjectKeys:
    def test_layout(self):
        now = datetime(2026, 3, 5, 12, 0, tzinfo=timezone.utc)
        key = build_object_key("t1", "production", "documents", "Q1 report.pdf", now=now, rand=42)
        ts = int(now.timestamp() * 1000)
        assert key == f"tenants/t1/production/documents/2026/03/Q1-report-{ts}-42.pdf"

    def test_requires_tenant(self):
        with pytest.raises(TenantRequired):
            build_object_key("", "test", "documents", "a.txt")

    def test_sanitize(self):
        assert sanitize_filename("../../etc/passwd") == "..-..-etc-passwd"
        assert sanitize_filename("naïve file.txt") == "na-ve-file.txt"

    def test_prefix_check_is_exact(self):
        assert key_belongs_to(T1_KEY, "t1")
        assert not key_belongs_to(T1_KEY, "t")
        assert not key_belongs_to("tenants/t10/x", "t1")
        assert not key_belongs_to(T1_KEY, None)

    @pytest.mark.parametrize("key", [
        "tenants/t1/../t2/x.pdf",
        "tenants/t1/./x.pdf",
        "tenants/t1//x.pdf",
        "tenants/t1/test/documents/",
    ])
    def test_unsafe_segments_refused(self, key):
        assert not key_belongs_to(key, "t1")
        with pytest.raises(CrossTenantDenied):
            assert_key_access(key, "t1")

    def test_assert_key_access(self):
        with pytest.raises(CrossTenantDenied):
            assert_key_access(T1_KEY, "t2")


# ===========================================================================
# Object store
# ===========================================================================

class TestTenantObjectStore:
    @pytest.mark.asyncio
    async def test_upload_uses_context_tenant(self, store, client):
        async with with_tenant("t1"):
            result = await store.upload(b"hello", "notes.txt", "text/plain", file_type="documents")
        assert result["key"].startswith("tenants/t1/test/documents/")
        assert result["size"] == 5
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "files"
        assert kwargs["Metadata"]["tenant-id"] == "t1"

    @pytest.mark.asyncio
    async def test_upload_without_tenant(self, store):
        with pytest.raises(TenantRequired):
            await store.upload(b"x", "a.txt")

    @pytest.mark.asyncio
    async def test_signed_urls(self, store, client):
        upload = await store.signed_upload_url("a.png", "image/png", file_type="images", tenant_id="t1")
        assert upload["url"] == "https://s3.test/signed"
        assert upload["key"].startswith("tenants/t1/test/images/")
        assert upload["expires_in"] == 3600

        url = await store.signed_download_url(T1_KEY, tenant_id="t1", expires_in=60)
        assert url == "https://s3.test/signed"
        assert client.generate_presigned_url.call_args.kwargs["ExpiresIn"] == 60

    @pytest.mark.asyncio
    async def test_foreign_key_refused_before_s3(self, store, client):
        async with with_tenant("t2"):
            with pytest.raises(CrossTenantDenied):
                await store.signed_download_url(T1_KEY)
            with pytest.raises(CrossTenantDenied):
                await store.delete(T1_KEY)
            with pytest.raises(CrossTenantDenied):
                await store.head(T1_KEY)
        client.generate_presigned_url.assert_not_called()
        client.delete_object.assert_not_called()
        client.head_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_head(self, store):
        info = await store.head(T1_KEY, tenant_id="t1")
        assert info["size"] == 12
        assert info["metadata"] == {"tenant-id": "t1"}

    @pytest.mark.asyncio
    async def test_exists(self, store, client):
        assert await store.exists(T1_KEY, tenant_id="t1")
        assert not await store.exists(T1_KEY, tenant_id="t2")

        client.head_object.side_effect = _client_error("404")
        assert not await store.exists(T1_KEY, tenant_id="t1")

    @pytest.mark.asyncio
    async def test_exists_propagates_other_errors(self, store, client):
        client.head_object.side_effect = _client_error("AccessDenied")
        with pytest.raises(ClientError):
            await store.exists(T1_KEY, tenant_id="t1")

    @pytest.mark.asyncio
    async def test_delete(self, store, client):
        await store.delete(T1_KEY, tenant_id="t1")
        client.delete_object.assert_called_once_with(Bucket="files", Key=T1_KEY)

    @pytest.mark.asyncio
    async def test_list_keys_is_prefixed(self, store, client):
        rows = await store.list_keys(tenant_id="t1", file_type="documents")
        assert rows[0]["key"] == T1_KEY
        assert client.list_objects_v2.call_args.kwargs["Prefix"] == "tenants/t1/test/documents/"
