"""
健康检查接口。
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from agent_gateway.api.deps import get_registry, get_settings

router = APIRouter()


@router.get("/healthz")
def healthz(request: Request) -> dict:
    return {
        "status": "ok",
        "backend": get_settings(request).agent_backend,
        "sessions": len(get_registry(request)),
    }
