"""Tenant file storage endpoints (signed URLs over the object store)."""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from supportdesk.api.deps import current_tenant, get_kernel, get_object_store, require_roles
from supportdesk.multitenancy.identity import Identity, Role
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.storage import TenantObjectStore
from supportdesk.multitenancy.tenant import Tenant

router = APIRouter(prefix="/api/files", tags=["files"])


class UploadUrlRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str = "application/octet-stream"
    file_type: str = Field(default="others", pattern=r"^[a-z0-9-]+$")


@router.post("/upload-url")
async def upload_url(
    payload: UploadUrlRequest,
    tenant: Tenant = Depends(current_tenant),
    store: TenantObjectStore = Depends(get_object_store),
) -> dict:
    return await store.signed_upload_url(
        payload.filename,
        content_type=payload.content_type,
        file_type=payload.file_type,
        tenant_id=tenant.id,
    )


@router.post("", status_code=201)
async def upload_file(
    request: Request,
    filename: str = Query(..., min_length=1, max_length=255),
    file_type: str = Query("others", pattern=r"^[a-z0-9-]+$"),
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    store: TenantObjectStore = Depends(get_object_store),
) -> dict:
    body = await request.body()
    size_mb = max(1, math.ceil(len(body) / (1024 * 1024)))
    await kernel.admission.consume(tenant.id, "storage_mb", size_mb)
    try:
        return await store.upload(
            body,
            filename,
            content_type=request.headers.get("content-type", "application/octet-stream"),
            file_type=file_type,
            tenant_id=tenant.id,
        )
    except Exception:
        await kernel.admission.release(tenant.id, "storage_mb", size_mb)
        raise


@router.get("/download-url")
async def download_url(
    key: str = Query(..., min_length=1),
    tenant: Tenant = Depends(current_tenant),
    store: TenantObjectStore = Depends(get_object_store),
) -> dict:
    url = await store.signed_download_url(key, tenant_id=tenant.id)
    return {"url": url, "key": key, "expires_in": store.url_ttl}


@router.get("")
async def list_files(
    file_type: str | None = Query(None, pattern=r"^[a-z0-9-]+$"),
    limit: int = Query(100, ge=1, le=1000),
    tenant: Tenant = Depends(current_tenant),
    store: TenantObjectStore = Depends(get_object_store),
) -> dict:
    return {"items": await store.list_keys(tenant.id, file_type=file_type, max_keys=limit)}


@router.delete("")
async def delete_file(
    key: str = Query(..., min_length=1),
    tenant: Tenant = Depends(current_tenant),
    store: TenantObjectStore = Depends(get_object_store),
    _: Identity = Depends(require_roles(Role.ADMIN, Role.AGENT)),
) -> dict:
    await store.delete(key, tenant_id=tenant.id)
    return {"deleted": key}
