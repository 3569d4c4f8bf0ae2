"""
对话接口：同一 session_id 的消息串行送入同一个 agent handle。
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from agent_gateway.api.deps import get_registry, require_auth
from agent_gateway.api.errors import to_http_exception
from agent_gateway.services.agent_client import AgentError
from agent_gateway.services.session_registry import RegistryClosedError, normalize_session_key

router = APIRouter(prefix="/v1", tags=["chat"])


class ChatRequest(BaseModel):
    session_id: str = Field(..., min_length=1, description="会话 key（同一 key 共享对话上下文）")
    message: str = Field(..., min_length=1, description="发送给 agent 的消息")


@router.post("/chat", dependencies=[Depends(require_auth)])
async def chat(request: Request, body: ChatRequest) -> dict[str, Any]:
    registry = get_registry(request)
    try:
        session_id = normalize_session_key(body.session_id)
    except ValueError as exc:
        raise to_http_exception(exc) from exc
    if not body.message.strip():
        raise HTTPException(status_code=422, detail="字段 message 不能为空")

    try:
        reply = await registry.run_exclusive(session_id, body.message)
    except (AgentError, RegistryClosedError) as exc:
        raise to_http_exception(exc) from exc
    return {"session_id": session_id, **reply.to_dict()}
