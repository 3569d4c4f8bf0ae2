"""
把 agent / 注册表的类型化错误映射为 HTTPException。
"""

from __future__ import annotations

from fastapi import HTTPException

from agent_gateway.services.agent_client import AgentError, AgentProcessError, HandleCreationError
from agent_gateway.services.session_registry import RegistryClosedError, SessionNotFoundError


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (HandleCreationError, RegistryClosedError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, AgentProcessError):
        return HTTPException(
            status_code=502,
            detail={"error": str(exc), "exit_code": exc.exit_code, "stderr": exc.stderr},
        )
    if isinstance(exc, AgentError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    raise TypeError(f"无法映射的异常类型：{type(exc).__name__}") from exc
