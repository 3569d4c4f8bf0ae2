"""
agent_gateway 服务启动入口。

运行方式（在仓库根目录）：
    pip install -e .
    API_AUTH_TOKEN=xxx AGENT_BACKEND=mock python main.py

配置从环境变量或根目录 .env 读取（见 agent_gateway/core/config.py）；
AGENT_BACKEND=claude 时需要本机已安装 Claude Code CLI。
HOST/PORT 控制监听地址，日志等级由 LOG_LEVEL 决定。
"""

from __future__ import annotations

import os

import uvicorn

from agent_gateway.api.app import create_app
from agent_gateway.core.config import load_settings
from agent_gateway.core.logging_config import get_logging_config


def main() -> None:
    settings = load_settings()
    app = create_app(settings)

    host = os.environ.get("HOST", "0.0.0.0").strip() or "0.0.0.0"
    port_raw = os.environ.get("PORT", "8000").strip() or "8000"
    try:
        port = int(port_raw)
    except ValueError as exc:
        raise ValueError(f"环境变量 PORT 必须是整数，当前值：{port_raw!r}") from exc

    uvicorn.run(app, host=host, port=port, log_config=get_logging_config(settings.log_level))


if __name__ == "__main__":
    main()
