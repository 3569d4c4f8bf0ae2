"""
FastAPI 依赖注入（鉴权、配置、会话注册表）。
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from agent_gateway.core.config import Settings
from agent_gateway.core.security import AuthError, verify_bearer_token
from agent_gateway.services.session_registry import SessionRegistry


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise RuntimeError("应用未初始化 settings（不应发生）")
    return settings


def get_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise RuntimeError("应用未初始化会话注册表（不应发生）")
    return registry


def require_auth(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    """校验 Bearer token：缺失 401，不匹配 403。"""

    settings = get_settings(request)
    try:
        verify_bearer_token(authorization, settings.api_auth_token)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
