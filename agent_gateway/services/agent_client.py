"""
Agent SDK 封装（claude-agent-sdk，底层是长期运行的 CLI 子进程）。

设计目标：
- 对注册表只暴露一个很窄的 handle 契约：send / receive_full_reply / interrupt / close
- SDK 的异常统一翻译为本项目的类型化错误，HTTP 层据此映射状态码
- 快速失败：CLI 缺失、凭据错误在创建 handle 时就抛出，而不是会话中途

重要说明：
- 会话上下文保存在 handle（子进程）内部，本模块不做任何缓存或重试。
- 回复会被收集到终止的 ResultMessage 为止；流提前结束视为回复格式错误。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    CLIConnectionError,
    CLIJSONDecodeError,
    ProcessError,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from agent_gateway.core.config import Settings

logger = logging.getLogger(__name__)


class AgentError(RuntimeError):
    """Agent handle 调用失败（所有类型化错误的基类）。"""


class HandleCreationError(AgentError):
    """创建 handle 失败：CLI 缺失、凭据错误或子进程启动即退出。"""


class AgentConnectionError(AgentError):
    """与 agent 子进程的连接失败或已断开。"""


class AgentProcessError(AgentError):
    """agent 子进程异常退出。"""

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class MalformedReplyError(AgentError):
    """回复无法解析，或在收到 result 之前就结束。"""


@dataclass
class AgentReply:
    """一次完整交互的回复：按顺序的内容块 + 终止 result 的元数据。"""

    blocks: list[dict[str, Any]] = field(default_factory=list)
    result: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return "\n".join(b["text"] for b in self.blocks if b.get("type") == "text" and b.get("text"))

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "blocks": list(self.blocks), "result": self.result}


class AgentHandle(Protocol):
    async def send(self, message: str) -> None: ...

    async def receive_full_reply(self) -> AgentReply: ...

    async def interrupt(self) -> None: ...

    async def close(self) -> None: ...


HandleFactory = Callable[[], Awaitable[AgentHandle]]


def translate_sdk_error(exc: BaseException, *, action: str) -> AgentError:
    """把 SDK 异常翻译为类型化错误（ProcessError 需先于其它判断）。"""

    if isinstance(exc, AgentError):
        return exc
    if isinstance(exc, ProcessError):
        return AgentProcessError(
            f"{action}失败：agent 子进程退出（exit_code={exc.exit_code}）",
            exit_code=exc.exit_code,
            stderr=exc.stderr,
        )
    if isinstance(exc, CLIJSONDecodeError):
        return MalformedReplyError(f"{action}失败：无法解析 agent 输出：{exc}")
    if isinstance(exc, CLIConnectionError):
        return AgentConnectionError(f"{action}失败：与 agent 子进程的连接不可用：{exc}")
    return AgentError(f"{action}失败：{exc}")


def block_to_dict(block: object) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    return {"type": type(block).__name__}


def result_to_dict(message: ResultMessage) -> dict[str, Any]:
    return {
        "subtype": message.subtype,
        "session_id": message.session_id,
        "num_turns": message.num_turns,
        "duration_ms": message.duration_ms,
        "total_cost_usd": message.total_cost_usd,
        "is_error": message.is_error,
    }


async def _own_client(client: ClaudeSDKClient, connected: asyncio.Future[None], stop: asyncio.Event) -> None:
    """在同一个任务里 connect、等待关闭信号、disconnect。

    SDK 在 connect 时进入的 task group / cancel scope 只能由同一任务退出，
    因此 handle 的整个连接生命周期都挂在这个任务上。
    """

    try:
        await client.connect()
    except BaseException as exc:
        try:
            await client.disconnect()
        except Exception:
            logger.debug("清理未连接成功的 agent 客户端失败", exc_info=True)
        if isinstance(exc, asyncio.CancelledError):
            if not connected.done():
                connected.cancel()
            raise
        if not isinstance(exc, Exception):
            raise
        if not connected.done():
            connected.set_exception(exc)
        return

    if not connected.done():
        connected.set_result(None)
    try:
        await stop.wait()
    finally:
        await client.disconnect()


@dataclass
class ClaudeAgentHandle:
    client: ClaudeSDKClient
    owner: asyncio.Task[None] | None = None
    stop_event: asyncio.Event | None = None
    _closed: bool = field(default=False, init=False)

    async def send(self, message: str) -> None:
        if self._closed:
            raise AgentConnectionError("发送消息失败：handle 已关闭")
        try:
            await self.client.query(message)
        except ClaudeSDKError as exc:
            raise translate_sdk_error(exc, action="发送消息") from exc

    async def receive_full_reply(self) -> AgentReply:
        reply = AgentReply()
        try:
            async for message in self.client.receive_response():
                if isinstance(message, AssistantMessage):
                    reply.blocks.extend(block_to_dict(b) for b in message.content)
                elif isinstance(message, UserMessage) and isinstance(message.content, list):
                    # 工具执行结果以 UserMessage 形式回流
                    reply.blocks.extend(block_to_dict(b) for b in message.content)
                elif isinstance(message, ResultMessage):
                    reply.result = result_to_dict(message)
        except ClaudeSDKError as exc:
            raise translate_sdk_error(exc, action="接收回复") from exc

        if reply.result is None:
            raise MalformedReplyError("接收回复失败：消息流在 result 之前结束")
        return reply

    async def interrupt(self) -> None:
        try:
            await self.client.interrupt()
        except ClaudeSDKError as exc:
            raise translate_sdk_error(exc, action="中断回复") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.owner is None:
                await self.client.disconnect()
            else:
                # 由 owner 任务完成 disconnect，这里只等待它结束
                self.stop_event.set()
                await self.owner
        except ClaudeSDKError as exc:
            raise translate_sdk_error(exc, action="关闭 handle") from exc


def build_claude_options(settings: Settings) -> ClaudeAgentOptions:
    env: dict[str, str] = {}
    if settings.anthropic_api_key:
        env["ANTHROPIC_API_KEY"] = settings.anthropic_api_key
    return ClaudeAgentOptions(
        model=settings.claude_model,
        system_prompt=settings.claude_system_prompt,
        max_turns=settings.claude_max_turns,
        allowed_tools=list(settings.claude_allowed_tools),
        permission_mode=settings.claude_permission_mode,
        cwd=settings.claude_cwd,
        env=env,
    )


async def open_claude_handle(
    settings: Settings,
    *,
    client_factory: Callable[[ClaudeAgentOptions], ClaudeSDKClient] = ClaudeSDKClient,
) -> ClaudeAgentHandle:
    """启动 CLI 子进程并返回已连接的 handle；任何失败都视为 HandleCreationError。"""

    client = client_factory(build_claude_options(settings))
    connected: asyncio.Future[None] = asyncio.get_running_loop().create_future()
    stop = asyncio.Event()
    owner = asyncio.create_task(_own_client(client, connected, stop), name="agent-client-owner")
    try:
        await connected
    except asyncio.CancelledError:
        owner.cancel()
        raise
    except Exception as exc:  # SDK 之外还可能抛 OSError 等，统一封装
        await owner
        raise HandleCreationError(f"创建 agent handle 失败：{exc}") from exc
    return ClaudeAgentHandle(client=client, owner=owner, stop_event=stop)


def build_handle_factory(settings: Settings) -> HandleFactory:
    """按 AGENT_BACKEND 返回 handle 工厂。"""

    if settings.agent_backend == "mock":
        from agent_gateway.services.mock_agent import MockAgentHandle

        async def _open_mock() -> AgentHandle:
            return MockAgentHandle(template=settings.mock_agent_reply)

        return _open_mock

    async def _open_claude() -> AgentHandle:
        return await open_claude_handle(settings)

    return _open_claude
