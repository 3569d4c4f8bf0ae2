"""
会话管理接口：查询、列表、中断、结束。
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from agent_gateway.api.deps import get_registry, require_auth
from agent_gateway.api.errors import to_http_exception
from agent_gateway.services.agent_client import AgentError
from agent_gateway.services.session_registry import SessionNotFoundError

router = APIRouter(prefix="/v1/session", tags=["session"])


class EndSessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, description="会话 key")
    reason: str | None = Field(default=None, description="可选：结束原因（默认 api）")


@router.get("", dependencies=[Depends(require_auth)])
def list_sessions(request: Request) -> dict[str, Any]:
    sessions = get_registry(request).list_sessions()
    return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}


@router.get("/{session_id}", dependencies=[Depends(require_auth)])
def get_session(request: Request, session_id: str) -> dict[str, Any]:
    try:
        return get_registry(request).get(session_id).to_dict()
    except (SessionNotFoundError, ValueError) as exc:
        raise to_http_exception(exc) from exc


@router.post("/{session_id}/interrupt", dependencies=[Depends(require_auth)])
async def interrupt_session(request: Request, session_id: str) -> dict[str, Any]:
    try:
        info = await get_registry(request).interrupt(session_id)
    except (SessionNotFoundError, AgentError, ValueError) as exc:
        raise to_http_exception(exc) from exc
    return {**info.to_dict(), "interrupted": True}


@router.post("/end", dependencies=[Depends(require_auth)])
async def end_session(request: Request, body: EndSessionRequest) -> dict[str, Any]:
    reason = (body.reason or "").strip() or "api"
    try:
        info = await get_registry(request).end(body.session_id, reason=reason)
    except (SessionNotFoundError, ValueError) as exc:
        raise to_http_exception(exc) from exc
    return {**info.to_dict(), "status": "ended", "end_reason": reason}
