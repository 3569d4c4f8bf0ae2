"""
日志配置：应用与 uvicorn 共用一份 dictConfig，并屏蔽健康检查的访问日志。
"""

from __future__ import annotations

import logging
from typing import Any

HEALTH_PATH = "/healthz"


class HealthCheckFilter(logging.Filter):
    """过滤 uvicorn 访问日志中的 GET /healthz。"""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name != "uvicorn.access":
            return True
        message = record.getMessage()
        return not (HEALTH_PATH in message and "GET" in message)


def get_logging_config(level: str = "INFO") -> dict[str, Any]:
    level = (level or "INFO").upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "health_check_filter": {"()": HealthCheckFilter},
        },
        "formatters": {
            "default": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
            "access": {"format": "%(message)s"},
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": "ext://sys.stdout",
                "filters": ["health_check_filter"],
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
            "agent_gateway": {"handlers": ["default"], "level": level, "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": ["default"]},
    }
