"""Conversation and message endpoints (tenant-scoped, through the data gateway)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from supportdesk.api.deps import current_identity, current_tenant, get_kernel, require_roles
from supportdesk.multitenancy.identity import Identity, Role
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.tenant import Tenant

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

CONVERSATIONS = "conversations"
MESSAGES = "messages"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ConversationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str = Field(default="", max_length=512)
    channel: str = "chat"
    contact_id: str | None = None
    priority: int = 0
    # must match the request scope when given
    tenant_id: str | None = Field(default=None, alias="tenantId")


class ConversationPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str | None = None
    status: str | None = None
    assigned_to: str | None = None
    priority: int | None = None
    # stripped by the gateway
    tenant_id: str | None = Field(default=None, alias="tenantId")


class MessageCreate(BaseModel):
    body: str = Field(min_length=1)
    sender_type: str = "agent"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_conversations(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(current_identity),
) -> dict:
    filter = {"status": status} if status else {}
    rows = await kernel.gateway.find(
        CONVERSATIONS, filter, sort=[("updated_at", -1)], skip=skip, limit=limit
    )
    total = await kernel.gateway.count(CONVERSATIONS, filter)
    return {"items": rows, "total": total}


@router.post("", status_code=201)
async def create_conversation(
    payload: ConversationCreate,
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    identity: Identity = Depends(current_identity),
) -> dict:
    kernel.admission.require_module(tenant, "chat")
    record = payload.model_dump(exclude_none=True)
    record["assigned_to"] = identity.subject_id if identity.role.bucket == "agents" else None
    created = await kernel.gateway.create(CONVERSATIONS, record)
    await kernel.realtime.emit_to_role(tenant.id, "agents", "conversation:new", created)
    return created


@router.get("/stats")
async def conversation_stats(kernel: TenantKernel = Depends(get_kernel)) -> dict:
    rows = await kernel.gateway.aggregate(
        CONVERSATIONS,
        [{"$group": {"_id": "$status", "count": {"$sum": 1}}}, {"$sort": {"_id": 1}}],
    )
    return {"by_status": {row["_id"]: row["count"] for row in rows}}


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    kernel: TenantKernel = Depends(get_kernel),
) -> dict:
    row = await kernel.gateway.get(CONVERSATIONS, conversation_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    return row


@router.patch("/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: ConversationPatch,
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(require_roles(Role.ADMIN, Role.AGENT)),
) -> dict:
    changes = payload.model_dump(exclude_none=True)
    updated = await kernel.gateway.update_one(CONVERSATIONS, {"id": conversation_id}, changes)
    row = await kernel.gateway.get(CONVERSATIONS, conversation_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    return {"updated": updated, "conversation": row}


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    kernel: TenantKernel = Depends(get_kernel),
    _: Identity = Depends(require_roles(Role.ADMIN)),
) -> dict:
    deleted = await kernel.gateway.delete(CONVERSATIONS, {"id": conversation_id})
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    await kernel.gateway.delete(MESSAGES, {"conversation_id": conversation_id}, many=True)
    return {"deleted": deleted}


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=1000),
    kernel: TenantKernel = Depends(get_kernel),
) -> dict:
    if await kernel.gateway.get(CONVERSATIONS, conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    rows = await kernel.gateway.find(
        MESSAGES, {"conversation_id": conversation_id}, sort=[("created_at", 1)], limit=limit
    )
    return {"items": rows}


@router.post("/{conversation_id}/messages", status_code=201)
async def post_message(
    conversation_id: str,
    payload: MessageCreate,
    tenant: Tenant = Depends(current_tenant),
    kernel: TenantKernel = Depends(get_kernel),
    identity: Identity = Depends(current_identity),
) -> dict:
    if await kernel.gateway.get(CONVERSATIONS, conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    await kernel.admission.consume(tenant.id, "monthly_messages")
    try:
        message = await kernel.gateway.create(
            MESSAGES,
            {
                "conversation_id": conversation_id,
                "sender_id": identity.subject_id,
                "sender_type": payload.sender_type,
                "body": payload.body,
            },
        )
    except Exception:
        await kernel.admission.release(tenant.id, "monthly_messages")
        raise
    await kernel.gateway.update_one(
        CONVERSATIONS, {"id": conversation_id}, {"$inc": {"message_count": 1}}
    )
    await kernel.realtime.emit_to_tenant(tenant.id, "message:new", message)
    return message
