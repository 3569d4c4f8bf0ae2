"""
离线 mock agent（AGENT_BACKEND=mock）。

用途：本地演示、没有安装 CLI 的环境、HTTP 层测试。
每个 handle 自带轮次计数，用来观察“上下文保存在 handle 内部”这一点。
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

from agent_gateway.core.config import DEFAULT_MOCK_AGENT_REPLY
from agent_gateway.services.agent_client import AgentConnectionError, AgentReply, MalformedReplyError

_instance_ids = itertools.count(1)


def _next_instance_id() -> str:
    return f"mock-{next(_instance_ids)}"


def render_reply(template: str, *, message: str, turn: int) -> str:
    try:
        return template.format(message=message, turn=turn)
    except (KeyError, IndexError, ValueError):
        # 未知占位符：按原样拼接
        return f"{template} {message}".strip()


@dataclass
class MockAgentHandle:
    template: str = DEFAULT_MOCK_AGENT_REPLY
    instance_id: str = field(default_factory=_next_instance_id)
    turn: int = field(default=0, init=False)
    received: list[str] = field(default_factory=list, init=False)
    interrupts: int = field(default=0, init=False)
    closed: bool = field(default=False, init=False)
    _pending: str | None = field(default=None, init=False)

    async def send(self, message: str) -> None:
        if self.closed:
            raise AgentConnectionError("发送消息失败：mock handle 已关闭")
        self.received.append(message)
        self._pending = message

    async def receive_full_reply(self) -> AgentReply:
        if self.closed:
            raise AgentConnectionError("接收回复失败：mock handle 已关闭")
        if self._pending is None:
            raise MalformedReplyError("接收回复失败：没有待回复的消息")

        message, self._pending = self._pending, None
        self.turn += 1
        text = render_reply(self.template, message=message, turn=self.turn)
        return AgentReply(
            blocks=[{"type": "text", "text": text}],
            result={
                "subtype": "success",
                "session_id": self.instance_id,
                "num_turns": self.turn,
                "duration_ms": 0,
                "total_cost_usd": 0.0,
                "is_error": False,
            },
        )

    async def interrupt(self) -> None:
        self.interrupts += 1
        self._pending = None

    async def close(self) -> None:
        self.closed = True
