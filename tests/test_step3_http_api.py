import unittest
from contextlib import contextmanager

from fastapi.testclient import TestClient

from agent_gateway.api.app import create_app
from agent_gateway.core.config import load_settings
from agent_gateway.services.agent_client import AgentProcessError, HandleCreationError
from agent_gateway.services.mock_agent import MockAgentHandle

TOKEN = "secret"


class _TrackingFactory:
    """记录创建过的 mock handle，便于断言生命周期。"""

    def __init__(self) -> None:
        self.handles: list[MockAgentHandle] = []
        self.fail: Exception | None = None

    async def __call__(self) -> MockAgentHandle:
        if self.fail is not None:
            raise self.fail
        handle = MockAgentHandle(template="turn={turn} {message}")
        self.handles.append(handle)
        return handle


class _CrashingHandle(MockAgentHandle):
    async def receive_full_reply(self):
        raise AgentProcessError("agent 子进程退出（exit_code=137）", exit_code=137, stderr="killed")


@contextmanager
def _test_client(handle_factory=None, **env: str):
    settings = load_settings({"API_AUTH_TOKEN": TOKEN, "AGENT_BACKEND": "mock", **env})
    app = create_app(settings, handle_factory=handle_factory)
    with TestClient(app) as client:
        yield client


def _auth() -> dict[str, str]:
    return {"Authorization": f"Bearer {TOKEN}"}


class TestHttpApi(unittest.TestCase):
    def test_healthz_ok(self) -> None:
        with _test_client() as client:
            resp = client.get("/healthz")
            self.assertEqual(resp.status_code, 200)
            data = resp.json()
            self.assertEqual(data["status"], "ok")
            self.assertEqual(data["backend"], "mock")
            self.assertEqual(data["sessions"], 0)

    def test_chat_auth_missing(self) -> None:
        with _test_client() as client:
            resp = client.post("/v1/chat", json={"session_id": "A", "message": "hi"})
            self.assertEqual(resp.status_code, 401)

    def test_chat_auth_wrong_token(self) -> None:
        with _test_client() as client:
            resp = client.post(
                "/v1/chat",
                headers={"Authorization": "Bearer wrong"},
                json={"session_id": "A", "message": "hi"},
            )
            self.assertEqual(resp.status_code, 403)

    def test_chat_keeps_context_per_session(self) -> None:
        with _test_client() as client:
            r1 = client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "你好"})
            self.assertEqual(r1.status_code, 200)
            data1 = r1.json()
            self.assertEqual(data1["session_id"], "A")
            self.assertEqual(data1["text"], "[mock] turn=1: 你好")
            self.assertEqual(data1["blocks"], [{"type": "text", "text": "[mock] turn=1: 你好"}])
            self.assertEqual(data1["result"]["num_turns"], 1)

            r2 = client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "再来"})
            self.assertEqual(r2.json()["text"], "[mock] turn=2: 再来")
            self.assertEqual(r2.json()["result"]["session_id"], data1["result"]["session_id"])

            r3 = client.post("/v1/chat", headers=_auth(), json={"session_id": "B", "message": "hi"})
            self.assertEqual(r3.json()["text"], "[mock] turn=1: hi")

            health = client.get("/healthz").json()
            self.assertEqual(health["sessions"], 2)

    def test_chat_validation(self) -> None:
        with _test_client() as client:
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "   "})
            self.assertEqual(resp.status_code, 422)
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": "   ", "message": "hi"})
            self.assertEqual(resp.status_code, 422)
            resp = client.post("/v1/chat", headers=_auth(), json={"message": "hi"})
            self.assertEqual(resp.status_code, 422)
            # 带 / 的 key 无法通过 /v1/session/{session_id} 访问，直接拒绝
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": "team/a", "message": "hi"})
            self.assertEqual(resp.status_code, 422)
            self.assertEqual(client.get("/v1/session", headers=_auth()).json()["count"], 0)

    def test_chat_forwards_message_unchanged(self) -> None:
        factory = _TrackingFactory()
        with _test_client(handle_factory=factory) as client:
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": " A ", "message": "  hi\n"})
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["session_id"], "A")
        self.assertEqual(factory.handles[0].received, ["  hi\n"])

    def test_session_get_list_interrupt_end(self) -> None:
        with _test_client() as client:
            client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "one"})

            got = client.get("/v1/session/A", headers=_auth())
            self.assertEqual(got.status_code, 200)
            info = got.json()
            self.assertEqual(info["session_id"], "A")
            self.assertEqual(info["request_count"], 1)
            self.assertFalse(info["busy"])
            self.assertIsNotNone(info["created_at"])

            listed = client.get("/v1/session", headers=_auth())
            self.assertEqual(listed.status_code, 200)
            self.assertEqual(listed.json()["count"], 1)
            self.assertEqual(listed.json()["sessions"][0]["session_id"], "A")

            interrupted = client.post("/v1/session/A/interrupt", headers=_auth())
            self.assertEqual(interrupted.status_code, 200)
            self.assertTrue(interrupted.json()["interrupted"])

            self.assertEqual(client.get("/v1/session/nope", headers=_auth()).status_code, 404)
            self.assertEqual(client.post("/v1/session/nope/interrupt", headers=_auth()).status_code, 404)

            ended = client.post("/v1/session/end", headers=_auth(), json={"session_id": "A"})
            self.assertEqual(ended.status_code, 200)
            self.assertEqual(ended.json()["status"], "ended")
            self.assertEqual(ended.json()["end_reason"], "api")

            self.assertEqual(client.get("/v1/session/A", headers=_auth()).status_code, 404)
            again = client.post("/v1/session/end", headers=_auth(), json={"session_id": "A", "reason": "manual"})
            self.assertEqual(again.status_code, 404)

            # 结束后重新对话：全新的 handle，不复用旧上下文
            fresh = client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "two"})
            self.assertEqual(fresh.json()["text"], "[mock] turn=1: two")

    def test_session_routes_require_auth(self) -> None:
        with _test_client() as client:
            self.assertEqual(client.get("/v1/session").status_code, 401)
            self.assertEqual(client.get("/v1/session/A").status_code, 401)
            self.assertEqual(client.post("/v1/session/end", json={"session_id": "A"}).status_code, 401)

    def test_injected_factory_and_shutdown_closes_handles(self) -> None:
        factory = _TrackingFactory()
        with _test_client(handle_factory=factory) as client:
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "x"})
            self.assertEqual(resp.json()["text"], "turn=1 x")
            client.post("/v1/chat", headers=_auth(), json={"session_id": "B", "message": "y"})
            self.assertEqual(len(factory.handles), 2)
            self.assertFalse(any(h.closed for h in factory.handles))
        self.assertTrue(all(h.closed for h in factory.handles))

    def test_handle_creation_failure_maps_to_503(self) -> None:
        factory = _TrackingFactory()
        factory.fail = HandleCreationError("创建 agent handle 失败：Claude Code not found")
        with _test_client(handle_factory=factory) as client:
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": "B", "message": "hi"})
            self.assertEqual(resp.status_code, 503)
            self.assertIn("not found", resp.json()["detail"])
            self.assertEqual(client.get("/v1/session", headers=_auth()).json()["count"], 0)

    def test_process_failure_maps_to_502(self) -> None:
        async def factory() -> MockAgentHandle:
            return _CrashingHandle()

        with _test_client(handle_factory=factory) as client:
            resp = client.post("/v1/chat", headers=_auth(), json={"session_id": "A", "message": "hi"})
            self.assertEqual(resp.status_code, 502)
            detail = resp.json()["detail"]
            self.assertEqual(detail["exit_code"], 137)
            self.assertEqual(detail["stderr"], "killed")
            # 错误不重试、不销毁会话
            self.assertEqual(client.get("/v1/session/A", headers=_auth()).status_code, 200)


if __name__ == "__main__":
    unittest.main()
