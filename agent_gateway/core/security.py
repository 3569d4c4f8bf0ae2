"""
鉴权（静态 Bearer token）。

约定：
- 客户端通过 `Authorization: Bearer <token>` 传递 API_AUTH_TOKEN。
- 缺少/格式错误对应 401，token 不匹配对应 403。
"""

from __future__ import annotations

import hmac

_BEARER_PREFIX = "bearer "


class AuthError(Exception):
    """鉴权失败。"""

    status_code = 401


class MissingTokenError(AuthError):
    """缺少 token 或 Authorization 头格式不合法。"""

    status_code = 401


class InvalidTokenError(AuthError):
    """token 与配置不一致。"""

    status_code = 403


def parse_bearer_token(authorization_header: str | None) -> str | None:
    """从 Authorization 头解析 Bearer token（scheme 大小写不敏感），失败返回 None。"""

    raw = (authorization_header or "").strip()
    if not raw.lower().startswith(_BEARER_PREFIX):
        return None
    token = raw[len(_BEARER_PREFIX) :].strip()
    return token or None


def verify_bearer_token(authorization_header: str | None, expected_token: str) -> str:
    """校验 Bearer token，通过时返回 token。"""

    token = parse_bearer_token(authorization_header)
    if token is None:
        raise MissingTokenError("缺少或不合法的 Authorization 头（需要 Bearer token）")
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise InvalidTokenError("鉴权失败：token 不匹配")
    return token
