from __future__ import annotations

"""Upstream (worksheet service) error taxonomy.

Only TransientError is retried. AuthenticationError and MalformedResponseError
abort the current table immediately.
"""

__all__ = [
    "UpstreamError",
    "AuthenticationError",
    "TransientError",
    "MalformedResponseError",
    "classify_rejection",
]

# 认证/签名系エラーコード (10101 令牌不存在 .. 10106 令牌失效)
AUTH_ERROR_CODES = frozenset({10101, 10102, 10103, 10104, 10105, 10106})
_AUTH_HINTS = ("sign", "appkey", "app key", "auth", "token", "credential", "forbidden", "permission", "签名", "授权", "令牌")


class UpstreamError(Exception):
    """The worksheet service rejected or failed a request."""

    error_type = "UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: int | None = None, error_code: object = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AuthenticationError(UpstreamError):
    error_type = "AUTHENTICATION_ERROR"


class TransientError(UpstreamError):
    error_type = "TRANSIENT_ERROR"


class MalformedResponseError(UpstreamError):
    error_type = "MALFORMED_RESPONSE"


def classify_rejection(error_code: object, message: str, status_code: int | None = None) -> UpstreamError:
    """Map a ``success: false`` envelope to the matching error class."""
    text = f"worksheet service rejected request: error_code={error_code} msg={message}"
    try:
        code = int(error_code)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        code = None
    lowered = (message or "").lower()
    if code in AUTH_ERROR_CODES or any(h in lowered for h in _AUTH_HINTS):
        return AuthenticationError(text, status_code=status_code, error_code=error_code)
    return UpstreamError(text, status_code=status_code, error_code=error_code)
