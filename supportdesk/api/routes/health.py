"""Health check endpoint."""

from fastapi import APIRouter, Request

from supportdesk import __version__

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health_check(request: Request) -> dict:
    return {
        "status": "ok",
        "environment": request.app.state.kernel.policy.environment,
        "version": __version__,
        "tenant": getattr(request.state, "tenant_id", None),
    }
