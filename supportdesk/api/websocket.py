"""WebSocket endpoint bridging clients onto the scoped realtime hub."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from supportdesk.multitenancy.realtime import Connection, HandshakeRejected, ScopedRealtimeHub

logger = logging.getLogger("supportdesk.api")

# Query parameters accepted as handshake auth
HANDSHAKE_FIELDS = ("token", "tenantId", "tenantKey")


# ---------------------------------------------------------------------------
# Built-in events
# ---------------------------------------------------------------------------


def register_handlers(hub: ScopedRealtimeHub) -> ScopedRealtimeHub:
    """Install the ``ping`` and ``typing`` events on ``hub``."""

    @hub.on("ping")
    async def ping(conn: Connection, payload: Any) -> dict:
        return {"pong": True}

    @hub.on("typing", module="chat")
    async def typing(conn: Connection, payload: Any) -> None:
        data = hub.apply_tenant_scope(conn, payload if isinstance(payload, dict) else {})
        if conn.tenant_id is None or not data.get("conversation_id"):
            return None
        await hub.emit_to_role(
            conn.tenant_id,
            "agents",
            "typing",
            {
                "conversation_id": data["conversation_id"],
                "subject_id": conn.subject_id,
                "tenant_id": conn.tenant_id,
            },
        )
        return None

    return hub


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    hub: ScopedRealtimeHub = websocket.app.state.kernel.realtime
    auth = {k: websocket.query_params[k] for k in HANDSHAKE_FIELDS if k in websocket.query_params}
    await websocket.accept()
    try:
        conn = await hub.connect(
            websocket,
            auth,
            headers=dict(websocket.headers),
            host=websocket.headers.get("host"),
        )
    except HandshakeRejected as e:
        logger.info("WebSocket handshake rejected: %s", e.reason)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data: dict[str, Any] = json.loads(raw)
            except json.JSONDecodeError:
                hub.notify(conn, "error", {"error": "invalid JSON"})
                continue
            if not isinstance(data, dict) or not isinstance(data.get("event"), str):
                hub.notify(conn, "error", {"error": "frames need an event name"})
                continue
            await hub.handle_inbound(conn, data["event"], data.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(conn)
