"""
配置加载模块。

设计目标：
1. 统一从环境变量读取配置（可选 .env），避免散落在各处。
2. 提供清晰、中文的错误信息，便于快速排障。
3. 鉴权 token 必须显式提供；Agent 相关参数全部可缺省，交给 SDK 默认值。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

DEFAULT_ENV_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", ".env"))
DEFAULT_MOCK_AGENT_REPLY = "[mock] turn={turn}: {message}"

AGENT_BACKENDS = ("claude", "mock")
PERMISSION_MODES = ("default", "acceptEdits", "plan", "bypassPermissions")


class ConfigError(ValueError):
    """配置错误（缺失、格式不正确等）。"""


def _读取环境变量(
    environ: Mapping[str, str],
    key: str,
) -> str | None:
    value = environ.get(key)
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _读取必填环境变量(
    environ: Mapping[str, str],
    key: str,
) -> str:
    value = _读取环境变量(environ, key)
    if value is None:
        raise ConfigError(f"缺少必填环境变量：{key}")
    return value


def _读取整数环境变量(
    environ: Mapping[str, str],
    key: str,
    *,
    default: int | None = None,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = _读取环境变量(environ, key)
    if raw is None:
        if default is None:
            raise ConfigError(f"缺少必填环境变量：{key}")
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"环境变量 {key} 必须是整数，当前值：{raw!r}") from exc
    if min_value is not None and value < min_value:
        raise ConfigError(f"环境变量 {key} 不能小于 {min_value}，当前值：{value}")
    if max_value is not None and value > max_value:
        raise ConfigError(f"环境变量 {key} 不能大于 {max_value}，当前值：{value}")
    return value


def _读取可选整数环境变量(
    environ: Mapping[str, str],
    key: str,
    *,
    min_value: int,
) -> int | None:
    if _读取环境变量(environ, key) is None:
        return None
    return _读取整数环境变量(environ, key, min_value=min_value)


def _读取枚举环境变量(
    environ: Mapping[str, str],
    key: str,
    *,
    choices: tuple[str, ...],
    default: str | None,
) -> str | None:
    raw = _读取环境变量(environ, key)
    if raw is None:
        return default
    if raw not in choices:
        raise ConfigError(f"环境变量 {key} 必须是 {'/'.join(choices)} 之一，当前值：{raw!r}")
    return raw


def _读取列表环境变量(environ: Mapping[str, str], key: str) -> tuple[str, ...]:
    raw = _读取环境变量(environ, key)
    if raw is None:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """项目配置。

字段说明：
    api_auth_token:
        对外 HTTP API 的鉴权 token（静态 Bearer token）。
    agent_backend:
        claude（真实 claude-agent-sdk 子进程）或 mock（离线演示/测试）。
    session_timeout_minutes:
        会话空闲超时（分钟），超过后 handle 会被关闭并移出注册表。
    eviction_interval_seconds:
        空闲回收的扫描周期（秒）。
    claude_*:
        透传给 ClaudeAgentOptions 的参数，未设置则使用 SDK 默认值。
    anthropic_api_key:
        可选：写入 agent 子进程环境变量；CLI 已登录时可不填。
    mock_agent_reply:
        mock 后端的回复模板，支持 {message} 与 {turn} 占位符。
    log_level:
        日志等级（INFO/DEBUG...）。
    """

    api_auth_token: str
    agent_backend: str
    session_timeout_minutes: int
    eviction_interval_seconds: int
    claude_model: str | None
    claude_system_prompt: str | None
    claude_max_turns: int | None
    claude_allowed_tools: tuple[str, ...]
    claude_permission_mode: str | None
    claude_cwd: str | None
    anthropic_api_key: str | None
    mock_agent_reply: str
    log_level: str

    @property
    def session_timeout_seconds(self) -> float:
        return float(self.session_timeout_minutes * 60)


def load_settings(
    environ: Mapping[str, str] | None = None,
    *,
    env_path: str | None = None,
) -> Settings:
    """从环境变量加载配置。

注意：
    - 为了方便测试，允许注入 environ（此时不读取 .env）。
    - 安全相关配置（API_AUTH_TOKEN）必须存在。
    - AGENT_BACKEND=claude 时不在这里检查 CLI/凭据，而是在首次创建 handle 时快速失败。
    """

    if environ is None:
        load_dotenv(env_path or DEFAULT_ENV_PATH)
        env = os.environ
    else:
        env = environ

    api_auth_token = _读取必填环境变量(env, "API_AUTH_TOKEN")
    agent_backend = _读取枚举环境变量(env, "AGENT_BACKEND", choices=AGENT_BACKENDS, default="claude")

    session_timeout_minutes = _读取整数环境变量(
        env,
        "SESSION_TIMEOUT_MINUTES",
        default=10,
        min_value=1,
        max_value=24 * 60,
    )
    eviction_interval_seconds = _读取整数环境变量(env, "EVICTION_INTERVAL_SECONDS", default=60, min_value=1)

    claude_permission_mode = _读取枚举环境变量(
        env,
        "CLAUDE_PERMISSION_MODE",
        choices=PERMISSION_MODES,
        default=None,
    )

    mock_agent_reply = _读取环境变量(env, "MOCK_AGENT_REPLY") or DEFAULT_MOCK_AGENT_REPLY
    log_level = (_读取环境变量(env, "LOG_LEVEL") or "INFO").upper()

    return Settings(
        api_auth_token=api_auth_token,
        agent_backend=agent_backend or "claude",
        session_timeout_minutes=session_timeout_minutes,
        eviction_interval_seconds=eviction_interval_seconds,
        claude_model=_读取环境变量(env, "CLAUDE_MODEL"),
        claude_system_prompt=_读取环境变量(env, "CLAUDE_SYSTEM_PROMPT"),
        claude_max_turns=_读取可选整数环境变量(env, "CLAUDE_MAX_TURNS", min_value=1),
        claude_allowed_tools=_读取列表环境变量(env, "CLAUDE_ALLOWED_TOOLS"),
        claude_permission_mode=claude_permission_mode,
        claude_cwd=_读取环境变量(env, "CLAUDE_CWD"),
        anthropic_api_key=_读取环境变量(env, "ANTHROPIC_API_KEY"),
        mock_agent_reply=mock_agent_reply,
        log_level=log_level,
    )
