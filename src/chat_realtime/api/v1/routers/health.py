from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz(request: Request) -> dict[str, object]:
    registry = request.app.state.registry
    return {"status": "ok", "online": len(registry.online_user_ids())}
