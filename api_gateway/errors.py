"""
网关错误分类：各阶段以 (value, error) 返回错误对象，由视图统一渲染为错误信封。
错误同时是 Exception 子类，兜底处理器可直接捕获并转换。
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    """网关错误基类：code + HTTP 状态码 + 对外消息 + 附加字段。"""

    code = "GATEWAY_ERROR"
    status_code = 500
    default_message = "Gateway error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """错误信封中的 error 对象。"""
        body = {"message": self.message, "code": self.code, "statusCode": self.status_code}
        body.update(self.details)
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status={self.status_code})"


class MissingCredential(GatewayError):
    code = "MISSING_API_KEY"
    status_code = 401
    default_message = "API key is required. Provide it in the x-api-key header or Authorization: Bearer <key>"


class InvalidCredential(GatewayError):
    code = "INVALID_API_KEY"
    status_code = 403
    default_message = "The provided API key is not valid"


class RateLimitExceeded(GatewayError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many requests, please try again later"

    def __init__(self, retry_after: int, scope: str = "global", message: Optional[str] = None):
        self.retry_after = max(1, int(retry_after))
        self.scope = scope
        super().__init__(message, {"retryAfterSeconds": self.retry_after, "scope": scope})


class RouteNotFound(GatewayError):
    code = "ROUTE_NOT_FOUND"
    status_code = 404

    def __init__(self, path: str, available: Optional[List[str]] = None):
        self.path = path
        self.available = list(available or [])
        super().__init__(f"Route {path} not found", {"availableEndpoints": self.available})


class ServiceUnavailable(GatewayError):
    """后端不可达；underlying 仅用于服务端日志，不进入响应体。"""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503

    def __init__(self, service_name: str, underlying: str = ""):
        self.service_name = service_name
        self.underlying = underlying
        label = service_name[:1].upper() + service_name[1:] if service_name else "Backend"
        super().__init__(f"{label} service is currently unavailable", {"service": service_name})


class ValidationError(GatewayError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Field '{field}' is required", {"field": field})


class InternalError(GatewayError):
    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred"


class HttpError(GatewayError):
    """Werkzeug HTTP 异常（405/413 等）的信封化表示。"""

    def __init__(self, status_code: int, code: str, message: str):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


__all__ = [
    "GatewayError",
    "MissingCredential",
    "InvalidCredential",
    "RateLimitExceeded",
    "RouteNotFound",
    "ServiceUnavailable",
    "ValidationError",
    "InternalError",
    "HttpError",
]
