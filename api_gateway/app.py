"""
API 网关 Flask 应用：users / orders 两个后端的唯一 HTTP 入口。
请求管线（单请求内严格有序）：
  上下文(requestId) -> 全局限流 -> 路由匹配 -> [受保护路径] API Key 校验 -> 请求体校验
  -> 转发 -> 成功/错误信封 -> 响应头 + request 日志
各阶段以 (value, error) 返回，错误由视图显式渲染；未预期异常由兜底处理器转为 INTERNAL_ERROR。
"""
from __future__ import annotations

import os
import platform
import sys
import time
import traceback
from typing import Optional

from flask import Flask, g, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import API_KEY_HEADER, KeyValidator, extract_api_key
from .config import Settings, load_settings
from .context import RequestContext, build_context, utc_now_iso
from .errors import (
    GatewayError,
    HttpError,
    InternalError,
    RateLimitExceeded,
    RouteNotFound,
)
from .health import HEALTHY, UNHEALTHY, HealthAggregator
from .http_client import ProxyForwarder, create_pool
from .rate_limit import AUTH_SCOPE, GLOBAL_SCOPE, RateLimiter, create_rate_limiter
from .request_log import GatewayLog, configure_logging, redact_key
from .router import Router, forwardable_headers
from .transform import error_response, raw_response, success_response, validate_body

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "no-referrer",
}

FEATURES = [
    "API Key Authentication",
    "Rate Limiting & Throttling",
    "Request/Response Transformation",
    "Structured Logging",
    "Health Monitoring",
    "Service Proxy Integration",
]


def _error_code_name(name: str) -> str:
    return "_".join(name.upper().replace("-", " ").split())


def create_app(
    settings: Optional[Settings] = None,
    rate_limiter: Optional[RateLimiter] = None,
    forwarder: Optional[ProxyForwarder] = None,
    health: Optional[HealthAggregator] = None,
    log: Optional[GatewayLog] = None,
) -> Flask:
    """
    创建网关 Flask 应用。
    - settings：默认 load_settings() 从环境变量读取。
    - rate_limiter / forwarder / health / log：可注入，测试中每个场景使用新实例。
    """
    settings = settings or load_settings()
    app = Flask(__name__)
    app.config["JSON_AS_ASCII"] = False
    app.config["MAX_CONTENT_LENGTH"] = settings.max_body_mb * 1024 * 1024
    if settings.trust_proxy:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    CORS(app, origins=settings.cors_origins, supports_credentials=True,
         expose_headers=["X-Request-ID", "X-Environment", "X-Processing-Time", "Retry-After"])

    log = log or GatewayLog(recent_max=settings.log_recent_max)
    limiter = rate_limiter or create_rate_limiter(settings)
    if not limiter.has_scope(AUTH_SCOPE):
        limiter.configure(AUTH_SCOPE, settings.auth_rate_limit_max, settings.auth_rate_limit_window_sec)
    router = Router(settings.routes)
    validator = KeyValidator(settings.api_keys, log)
    if forwarder is None:
        forwarder = ProxyForwarder(
            create_pool(settings.pool_num_pools, settings.pool_maxsize),
            timeout_sec=settings.proxy_timeout_sec,
            connect_timeout_sec=settings.proxy_connect_timeout_sec,
        )
    health = health or HealthAggregator(settings.services, timeout_sec=settings.health_timeout_sec)
    started_at = time.monotonic()
    app.extensions["api_gateway"] = {
        "settings": settings,
        "rate_limiter": limiter,
        "router": router,
        "validator": validator,
        "forwarder": forwarder,
        "health": health,
        "log": log,
    }

    def _ctx() -> RequestContext:
        ctx = g.get("ctx")
        if ctx is None:
            ctx = g.ctx = build_context(request.remote_addr)
        return ctx

    def _fail(err: GatewayError):
        return error_response(_ctx(), err, request.path, request.method, log)

    def _ok(data, status: int = 200, headers=None):
        return success_response(_ctx(), data, status, headers)

    def _uptime() -> float:
        return round(time.monotonic() - started_at, 3)

    @app.before_request
    def before():
        # 上下文每个请求只建一次，先于其它阶段
        ctx = _ctx()
        if not limiter.enabled:
            return None
        decision = limiter.admit(GLOBAL_SCOPE, ctx.client_identity)
        g.rate = decision
        if not decision.allowed:
            return _fail(RateLimitExceeded(
                decision.retry_after, GLOBAL_SCOPE,
                "Too many requests from this IP, please try again later.",
            ))
        return None

    @app.after_request
    def after(resp):
        ctx = g.get("ctx")
        if ctx is None:
            return resp
        elapsed = ctx.elapsed_ms()
        for k, v in SECURITY_HEADERS.items():
            resp.headers.setdefault(k, v)
        resp.headers["X-Request-ID"] = ctx.request_id
        resp.headers["X-Environment"] = ctx.environment
        resp.headers["X-Processing-Time"] = str(elapsed)
        decision = g.get("rate")
        if decision is not None:
            resp.headers["RateLimit-Limit"] = str(decision.limit)
            resp.headers["RateLimit-Remaining"] = str(decision.remaining)
            resp.headers["RateLimit-Reset"] = str(decision.retry_after)
        log.request(
            ctx.request_id, request.method, request.path, resp.status_code, elapsed,
            client=ctx.client_identity, apiKey=redact_key(ctx.api_key), environment=ctx.environment,
            userAgent=request.headers.get("User-Agent", ""),
        )
        return resp

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        if e.code == 404:
            return _fail(RouteNotFound(request.path, router.available_endpoints()))
        return _fail(HttpError(e.code or 500, _error_code_name(e.name), e.description or e.name))

    @app.errorhandler(Exception)
    def unhandled(e: Exception):
        # 完整信息只进服务端日志
        log.event("error", "unhandled_exception", _ctx().request_id, path=request.path, method=request.method,
                  error=repr(e), traceback=traceback.format_exc())
        return _fail(InternalError())

    # ---------- 公开路径：网关信息、文档、健康检查 ----------

    @app.route("/", methods=["GET"])
    def root():
        endpoints = {"health": "/health", "docs": "/docs"}
        endpoints.update({r.service_name: r.path_prefix for r in router.entries})
        return _ok({
            "service": "API Gateway",
            "version": settings.version,
            "environment": settings.environment,
            "timestamp": utc_now_iso(),
            "endpoints": endpoints,
            "documentation": "Gateway in front of the backend services: API key authentication, "
                             "rate limiting, request/response transformation, logging and health monitoring.",
        })

    @app.route("/docs", methods=["GET"])
    def docs():
        endpoints = {
            "GET /": "Gateway information",
            "GET /docs": "This documentation",
            "GET /health": "Basic health check",
            "GET /health/detailed": "Detailed health check with service status",
            "GET /health/ready": "Readiness check",
            "GET /health/live": "Liveness check",
        }
        for r in router.entries:
            auth = "auth required" if r.auth_required else "no auth"
            endpoints[f"* {r.path_prefix}/*"] = f"{r.service_name} service endpoints ({auth})"
        return _ok({
            "title": "API Gateway Documentation",
            "version": settings.version,
            "environment": settings.environment,
            "features": FEATURES,
            "authentication": {
                "method": "API Key",
                "header": f"{API_KEY_HEADER.lower()} or Authorization: Bearer <key>",
                "keys": {env: redact_key(key) for env, key in settings.api_keys.items()},
            },
            "rateLimiting": {
                "global": f"{settings.rate_limit_max} requests per {settings.rate_limit_window_sec / 60:g} minutes",
                "auth": f"{settings.auth_rate_limit_max} failed authentication attempts per "
                        f"{settings.auth_rate_limit_window_sec / 60:g} minutes",
            },
            "endpoints": endpoints,
        })

    @app.route("/health", methods=["GET"])
    def health_basic():
        return _ok({
            "service": "API Gateway",
            "status": HEALTHY,
            "timestamp": utc_now_iso(),
            "uptime": _uptime(),
            "environment": settings.environment,
            "version": settings.version,
        })

    @app.route("/health/detailed", methods=["GET"])
    def health_detailed():
        summary = health.summary()
        return _ok({
            "service": "API Gateway",
            "status": summary["status"],
            "timestamp": utc_now_iso(),
            "uptime": _uptime(),
            "environment": settings.environment,
            "version": settings.version,
            "services": summary["services"],
            "system": {
                "platform": sys.platform,
                "pythonVersion": platform.python_version(),
                "pid": os.getpid(),
            },
        })

    @app.route("/health/ready", methods=["GET"])
    def health_ready():
        if settings.ready_requires_backends and health.summary()["status"] == UNHEALTHY:
            return _ok({
                "service": "API Gateway",
                "status": "not_ready",
                "timestamp": utc_now_iso(),
                "message": "API Gateway is not ready to accept requests",
            }, 503)
        return _ok({
            "service": "API Gateway",
            "status": "ready",
            "timestamp": utc_now_iso(),
            "message": "API Gateway is ready to accept requests",
        })

    @app.route("/health/live", methods=["GET"])
    def health_live():
        return _ok({
            "service": "API Gateway",
            "status": "alive",
            "timestamp": utc_now_iso(),
            "uptime": _uptime(),
            "pid": os.getpid(),
        })

    # ---------- 通用代理：路由 -> 鉴权 -> 校验 -> 转发 ----------

    @app.route("/<path:path>", methods=PROXY_METHODS)
    def dispatch(path):
        full_path = request.path
        if router.is_public(full_path):
            return _fail(HttpError(405, "METHOD_NOT_ALLOWED", f"Method {request.method} not allowed on {full_path}"))
        match = router.match(full_path)
        if match is None:
            return _fail(RouteNotFound(full_path, router.available_endpoints()))
        entry = match.entry
        ctx = _ctx()

        if router.requires_auth(full_path, entry):
            # 校验前先占用 auth 名额，并发的错误 key 不会越过上限；成功则归还
            attempt = limiter.admit(AUTH_SCOPE, ctx.client_identity)
            if not attempt.allowed:
                return _fail(RateLimitExceeded(
                    attempt.retry_after, AUTH_SCOPE, "Too many authentication attempts, please try again later",
                ))
            api_key = extract_api_key(request.headers)
            environment, err = validator.validate(api_key, ctx.request_id)
            if err is not None:
                return _fail(err)
            limiter.release(AUTH_SCOPE, ctx.client_identity)
            ctx = g.ctx = ctx.authenticated(environment, api_key)

        body = request.get_data()
        err = validate_body(entry, request.method, request.content_type, body)
        if err is not None:
            return _fail(err)

        headers = forwardable_headers(request.headers.items())
        headers["X-Request-ID"] = ctx.request_id
        prior = headers.pop("X-Forwarded-For", "")
        headers["X-Forwarded-For"] = f"{prior}, {ctx.client_identity}" if prior else ctx.client_identity
        headers["X-Forwarded-Host"] = request.host
        headers["X-Forwarded-Proto"] = request.scheme
        backend, err = forwarder.forward(
            request.method, entry.target_base_url, match.upstream_path, headers, body,
            service_name=entry.service_name,
            query_string=request.query_string.decode("latin-1"),
            request_id=ctx.request_id,
        )
        if err is not None:
            return _fail(err)

        is_json, data = backend.json()
        passthrough = {k: v for k, v in backend.headers.items() if k.lower() != "content-type"}
        if is_json:
            return _ok(data, backend.status, passthrough)
        resp = raw_response(backend.body, backend.status, backend.content_type)
        for k, v in passthrough.items():
            resp.headers[k] = v
        return resp

    return app


def main() -> None:
    """进程入口：读取环境变量、配置日志、启动多线程监听。"""
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_dir)
    log = GatewayLog(recent_max=settings.log_recent_max)
    app = create_app(settings, log=log)
    log.event(
        "info", "gateway_started", "",
        port=settings.port,
        environment=settings.environment,
        routes={r.path_prefix: r.target_base_url for r in settings.routes},
        apiKeyEnvironments=sorted(settings.api_keys),
    )
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
