"""
会话注册表：session key -> (agent handle, 互斥锁)。

职责：
- 每个 key 至多一个条目（包括 handle 正在创建的阶段）
- 同一 key 的请求按拿到锁的顺序严格串行；不同 key 之间完全并行
- 空闲超时回收：关闭 handle 并移除条目
- 进程退出时统一关闭全部 handle

回收策略：
- 正在持有锁、或有请求在排队的条目一律跳过，下个周期再判断。
- 排队中的请求拿到锁后会确认条目仍然有效；若已被结束，则重新创建 handle，
  绝不使用已关闭的 handle。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable

from agent_gateway.services.agent_client import (
    AgentError,
    AgentHandle,
    AgentReply,
    HandleCreationError,
    HandleFactory,
)

logger = logging.getLogger(__name__)

MAX_SESSION_KEY_LENGTH = 128


class SessionNotFoundError(RuntimeError):
    """会话不存在。"""


class RegistryClosedError(RuntimeError):
    """注册表已关闭（服务正在退出）。"""


def utc_now_iso() -> str:
    """返回 UTC ISO8601 时间字符串（秒级）。"""

    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalize_session_key(raw: str) -> str:
    key = (raw or "").strip()
    if not key:
        raise ValueError("session_id 不能为空")
    if len(key) > MAX_SESSION_KEY_LENGTH:
        raise ValueError(f"session_id 长度不能超过 {MAX_SESSION_KEY_LENGTH}，当前长度：{len(key)}")
    if "/" in key:
        # 路径参数无法匹配带 / 的 key
        raise ValueError(f"session_id 不能包含 /，当前值：{key!r}")
    return key


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    created_at: str
    last_activity_at: str
    idle_seconds: float
    request_count: int
    busy: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionEntry:
    key: str
    handle: AgentHandle
    created_at: float
    last_activity: float
    guard: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at_iso: str = field(default_factory=utc_now_iso)
    last_activity_iso: str = field(default_factory=utc_now_iso)
    request_count: int = 0
    # 持有锁 + 排队等待锁的请求数
    pending: int = 0

    @property
    def busy(self) -> bool:
        return self.pending > 0 or self.guard.locked()

    def touch(self, now: float) -> None:
        self.last_activity = now
        self.last_activity_iso = utc_now_iso()

    def to_info(self, now: float) -> SessionInfo:
        return SessionInfo(
            session_id=self.key,
            created_at=self.created_at_iso,
            last_activity_at=self.last_activity_iso,
            idle_seconds=round(max(0.0, now - self.last_activity), 3),
            request_count=self.request_count,
            busy=self.busy,
        )


class SessionRegistry:
    def __init__(
        self,
        open_handle: HandleFactory,
        *,
        max_idle: float,
        eviction_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_idle <= 0:
            raise ValueError("max_idle 必须大于 0")
        if eviction_interval <= 0:
            raise ValueError("eviction_interval 必须大于 0")
        self._open_handle = open_handle
        self.max_idle = float(max_idle)
        self.eviction_interval = float(eviction_interval)
        self._clock = clock
        self._entries: dict[str, SessionEntry] = {}
        self._opening: dict[str, asyncio.Task[SessionEntry]] = {}
        self._eviction_task: asyncio.Task[None] | None = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_key: object) -> bool:
        return isinstance(session_key, str) and session_key.strip() in self._entries

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """启动后台空闲回收任务（重复调用无副作用）。"""

        self._ensure_open()
        if self._eviction_task is None or self._eviction_task.done():
            self._eviction_task = asyncio.create_task(self._eviction_loop(), name="session-eviction")

    async def acquire(self, session_key: str) -> tuple[AgentHandle, asyncio.Lock]:
        """返回 key 对应的 (handle, 锁)；不存在则创建。创建失败时不会留下条目。"""

        entry = await self._get_or_open(normalize_session_key(session_key))
        return entry.handle, entry.guard

    async def run_exclusive(self, session_key: str, message: str) -> AgentReply:
        """在该会话的锁内发送消息并收集完整回复；handle 抛出的错误原样向上传递。"""

        key = normalize_session_key(session_key)
        while True:
            entry = await self._get_or_open(key)
            entry.pending += 1
            try:
                async with entry.guard:
                    if self._entries.get(key) is not entry:
                        # 排队期间会话被结束/回收，重新获取
                        continue
                    entry.touch(self._clock())
                    try:
                        await entry.handle.send(message)
                        return await entry.handle.receive_full_reply()
                    finally:
                        entry.request_count += 1
                        entry.touch(self._clock())
            finally:
                entry.pending -= 1

    async def evict_idle(self, max_idle: float | None = None) -> list[str]:
        """关闭并移除空闲超过 max_idle 秒且当前不忙的会话，返回被回收的 key。"""

        limit = self.max_idle if max_idle is None else float(max_idle)
        now = self._clock()
        victims: list[SessionEntry] = []
        for entry in list(self._entries.values()):
            if now - entry.last_activity <= limit:
                continue
            if entry.busy:
                logger.debug("会话忙，跳过本轮回收：key=%s", entry.key)
                continue
            victims.append(entry)

        # 判断与移除之间没有 await，不会与同 key 的请求交错
        for entry in victims:
            del self._entries[entry.key]
        for entry in victims:
            await self._close_handle(entry, reason="idle")
        return [entry.key for entry in victims]

    async def interrupt(self, session_key: str) -> SessionInfo:
        """尽力中断正在进行的回复；不获取锁。"""

        entry = self._require(normalize_session_key(session_key))
        await entry.handle.interrupt()
        logger.info("已请求中断：key=%s", entry.key)
        return entry.to_info(self._clock())

    async def end(self, session_key: str, *, reason: str = "api") -> SessionInfo:
        """等待当前请求完成后结束会话并关闭 handle。"""

        key = normalize_session_key(session_key)
        entry = self._require(key)
        async with entry.guard:
            removed = self._entries.get(key) is entry
            if removed:
                del self._entries[key]
        info = entry.to_info(self._clock())
        if removed:
            await self._close_handle(entry, reason=reason)
        return info

    def get(self, session_key: str) -> SessionInfo:
        return self._require(normalize_session_key(session_key)).to_info(self._clock())

    def list_sessions(self) -> list[SessionInfo]:
        now = self._clock()
        return [self._entries[key].to_info(now) for key in sorted(self._entries)]

    async def shutdown(self) -> None:
        """关闭全部 handle 并清空注册表；之后的 acquire 会抛 RegistryClosedError。"""

        if self._closed:
            return
        self._closed = True

        if self._eviction_task is not None:
            self._eviction_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._eviction_task
            self._eviction_task = None

        opening = list(self._opening.values())
        for task in opening:
            task.cancel()
        if opening:
            await asyncio.gather(*opening, return_exceptions=True)

        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._close_handle(entry, reason="shutdown")
        logger.info("会话注册表已关闭：共关闭 %d 个会话", len(entries))

    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryClosedError("会话注册表已关闭")

    def _require(self, key: str) -> SessionEntry:
        entry = self._entries.get(key)
        if entry is None:
            raise SessionNotFoundError(f"会话不存在：session_id={key}")
        return entry

    async def _get_or_open(self, key: str) -> SessionEntry:
        self._ensure_open()
        entry = self._entries.get(key)
        if entry is None:
            task = self._opening.get(key)
            if task is None:
                task = asyncio.create_task(self._open_entry(key), name=f"session-open:{key}")
                task.add_done_callback(_log_open_failure)
                self._opening[key] = task
            # 同 key 的并发首次请求共享同一次创建；单个调用方取消不影响创建本身
            try:
                entry = await asyncio.shield(task)
            except asyncio.CancelledError:
                # 创建任务被 shutdown 取消；调用方自身被取消时原样抛出
                if task.cancelled() and self._closed:
                    raise RegistryClosedError("会话注册表已关闭") from None
                raise
        entry.touch(self._clock())
        return entry

    async def _open_entry(self, key: str) -> SessionEntry:
        try:
            try:
                handle = await self._open_handle()
            except HandleCreationError:
                raise
            except AgentError as exc:
                raise HandleCreationError(f"创建 agent handle 失败：{exc}") from exc

            now = self._clock()
            entry = SessionEntry(key=key, handle=handle, created_at=now, last_activity=now)
            if self._closed:
                await self._close_handle(entry, reason="shutdown")
                raise RegistryClosedError("会话注册表已关闭")
            self._entries[key] = entry
            logger.info("会话已创建：key=%s（当前会话数 %d）", key, len(self._entries))
            return entry
        finally:
            self._opening.pop(key, None)

    async def _close_handle(self, entry: SessionEntry, *, reason: str) -> None:
        try:
            await entry.handle.close()
        except Exception:
            # 条目已移除，关闭失败只记录
            logger.warning("关闭会话 handle 失败：key=%s reason=%s", entry.key, reason, exc_info=True)
            return
        logger.info("会话已关闭：key=%s reason=%s", entry.key, reason)

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.eviction_interval)
            try:
                evicted = await self.evict_idle()
            except Exception:
                logger.exception("空闲会话回收失败")
                continue
            if evicted:
                logger.info("已回收空闲会话：%s", ", ".join(evicted))


def _log_open_failure(task: asyncio.Task[SessionEntry]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("创建会话失败：%s", exc)
