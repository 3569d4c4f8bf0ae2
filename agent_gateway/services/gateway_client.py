from __future__ import annotations

from urllib.parse import quote

import httpx


class GatewayClientError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayClientNotFound(GatewayClientError):
    pass


class GatewayClient:
    def __init__(self, base_url: str, auth_token: str, *, client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token.strip()
        if not self.auth_token:
            raise ValueError("agent_gateway auth_token is required")
        # 不限制读超时：回复要等到 result 才返回
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(10.0, read=None))

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.auth_token}"}

    def _session_url(self, session_id: str, suffix: str = "") -> str:
        return f"{self.base_url}/v1/session/{quote(session_id, safe='')}{suffix}"

    @staticmethod
    def _check(resp: httpx.Response) -> dict:
        if resp.status_code != 200:
            if resp.status_code == 404:
                raise GatewayClientNotFound(resp.text, status_code=404)
            raise GatewayClientError(resp.text, status_code=resp.status_code)
        return resp.json()

    def chat(self, *, session_id: str, message: str) -> dict:
        resp = self._client.post(
            f"{self.base_url}/v1/chat",
            headers=self._headers(),
            json={"session_id": session_id, "message": message},
        )
        return self._check(resp)

    def list_sessions(self) -> list[dict]:
        resp = self._client.get(f"{self.base_url}/v1/session", headers=self._headers())
        return self._check(resp)["sessions"]

    def get_session(self, *, session_id: str) -> dict:
        resp = self._client.get(self._session_url(session_id), headers=self._headers())
        return self._check(resp)

    def interrupt(self, *, session_id: str) -> dict:
        resp = self._client.post(self._session_url(session_id, "/interrupt"), headers=self._headers())
        return self._check(resp)

    def end_session(self, *, session_id: str, reason: str | None = None) -> dict:
        payload: dict[str, str] = {"session_id": session_id}
        if reason:
            payload["reason"] = reason
        resp = self._client.post(f"{self.base_url}/v1/session/end", headers=self._headers(), json=payload)
        return self._check(resp)

    def close(self) -> None:
        # 注入的 client 由调用方负责关闭
        if self._owns_client:
            self._client.close()
