"""
响应转换：处理结果显式包装为成功信封，错误路径包装为错误信封。
每个响应只经过其中一个函数，不会二次包装。
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import Response

from .context import RequestContext, utc_now_iso
from .errors import GatewayError, ValidationError
from .request_log import GatewayLog
from .router import RouteEntry

JSON_MIMETYPE = "application/json"
_BODY_METHODS = ("POST", "PUT", "PATCH")


def success_body(ctx: RequestContext, data: Any) -> Dict[str, Any]:
    return {
        "data": data,
        "metadata": {
            "requestId": ctx.request_id,
            "timestamp": utc_now_iso(),
            "environment": ctx.environment,
            "processingTimeMs": ctx.elapsed_ms(),
        },
    }


def error_body(ctx: RequestContext, err: GatewayError, path: str, method: str) -> Dict[str, Any]:
    return {
        "error": err.to_dict(),
        "metadata": {
            "requestId": ctx.request_id,
            "timestamp": utc_now_iso(),
            "environment": ctx.environment,
            "path": path,
            "method": method,
        },
    }


def _json(body: Dict[str, Any], status: int, headers: Optional[Dict[str, str]] = None) -> Response:
    return Response(
        json.dumps(body, ensure_ascii=False, default=str),
        status=status,
        mimetype=JSON_MIMETYPE,
        headers=headers,
    )


def success_response(ctx: RequestContext, data: Any, status: int = 200,
                     headers: Optional[Dict[str, str]] = None) -> Response:
    """2xx 与 4xx 数据响应均使用成功信封。"""
    return _json(success_body(ctx, data), status, headers)


def error_response(ctx: RequestContext, err: GatewayError, path: str, method: str,
                   log: Optional[GatewayLog] = None) -> Response:
    """错误信封 + 一条 error 日志。"""
    if log is not None:
        log.error(ctx.request_id, err.code, err.status_code, err.message, method=method, path=path,
                  environment=ctx.environment)
    headers = {}
    retry_after = getattr(err, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    return _json(error_body(ctx, err, path, method), err.status_code, headers)


def validate_body(entry: RouteEntry, method: str, content_type: Optional[str],
                  body: Optional[bytes]) -> Optional[ValidationError]:
    """POST/PUT/PATCH：JSON 请求体须可解析；路由声明的必填字段不能缺失或为空串。"""
    method = method.upper()
    if method not in _BODY_METHODS:
        return None
    parsed: Any = None
    if body and "json" in (content_type or "").lower():
        try:
            parsed = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return ValidationError("body", "Request body is not valid JSON")
    required = entry.required_fields.get(method) or ()
    if not required:
        return None
    if not isinstance(parsed, dict):
        return ValidationError(required[0])
    for name in required:
        if parsed.get(name) in (None, ""):
            return ValidationError(name)
    return None


def raw_response(body: bytes, status: int, content_type: str) -> Response:
    """非 JSON 后端响应原样转发。"""
    return Response(body, status=status, content_type=content_type or "application/octet-stream")
