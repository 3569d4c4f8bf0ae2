"""
FastAPI 应用装配。

约定：
- 会话注册表在 lifespan 中创建并挂到 app.state，退出时统一关闭全部 handle。
- 后台任务周期性回收空闲会话。
- handle 工厂可注入（测试/嵌入场景），否则按 AGENT_BACKEND 选择。
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from agent_gateway.api.routes.chat import router as chat_router
from agent_gateway.api.routes.health import router as health_router
from agent_gateway.api.routes.session import router as session_router
from agent_gateway.core.config import Settings
from agent_gateway.services.agent_client import HandleFactory, build_handle_factory
from agent_gateway.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(settings: Settings, *, handle_factory: HandleFactory | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = SessionRegistry(
            handle_factory or build_handle_factory(settings),
            max_idle=settings.session_timeout_seconds,
            eviction_interval=settings.eviction_interval_seconds,
        )
        await registry.start()
        app.state.settings = settings
        app.state.registry = registry
        logger.info(
            "agent_gateway 已启动：backend=%s session_timeout=%dmin",
            settings.agent_backend,
            settings.session_timeout_minutes,
        )
        try:
            yield
        finally:
            await registry.shutdown()
            logger.info("agent_gateway 已停止")

    app = FastAPI(title="agent_gateway", version="0.1.0", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(chat_router)
    app.include_router(session_router)
    return app

