"""
网关单元测试公共 fixture：可控时钟、桩后端（真实 HTTP，记录收到的请求）、网关 app。
"""
from __future__ import annotations

import os
import socket
import sys
import threading
import time

import pytest
from flask import Flask, Response, jsonify, request
from werkzeug.serving import make_server

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from api_gateway.config import Settings
from api_gateway.health import HealthAggregator
from api_gateway.rate_limit import RateLimiter, AUTH_SCOPE, GLOBAL_SCOPE
from api_gateway.request_log import GatewayLog
from api_gateway.router import RouteEntry

DEV_KEY = "dev-api-key-12345"
PROD_KEY = "prod-api-key-67890"
API_KEYS = {"development": DEV_KEY, "production": PROD_KEY}
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubBackend:
    """最小后端：/health 可调延迟与状态码；其它路径回显请求并记录。"""

    def __init__(self, name: str):
        self.name = name
        self.requests = []
        self.health_status = 200
        self.health_delay = 0.0
        app = Flask(f"stub_{name}")

        @app.route("/health")
        def health():
            if self.health_delay:
                time.sleep(self.health_delay)
            return jsonify({"status": "healthy", "service": name}), self.health_status

        @app.route("/", defaults={"path": ""}, methods=ALL_METHODS)
        @app.route("/<path:path>", methods=ALL_METHODS)
        def echo(path):
            self.requests.append({
                "method": request.method,
                "path": request.path,
                "query": request.query_string.decode(),
                "body": request.get_data(),
                "headers": dict(request.headers),
            })
            if request.path.endswith("/plain"):
                return Response("pong", mimetype="text/plain")
            if request.path.endswith("/missing"):
                return jsonify({"error": "not found"}), 404
            status = 201 if request.method == "POST" else 200
            return jsonify({"service": name, "method": request.method, "path": request.path, "items": [1, 2, 3]}), status

        self._server = make_server("127.0.0.1", 0, app, threaded=True)
        self.url = f"http://127.0.0.1:{self._server.server_port}"
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    def start(self) -> "StubBackend":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=2)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def users_backend():
    b = StubBackend("users").start()
    yield b
    b.stop()


@pytest.fixture
def orders_backend():
    b = StubBackend("orders").start()
    yield b
    b.stop()


@pytest.fixture
def dead_url():
    """绑定后立即释放的端口，连接会被拒绝。"""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return f"http://127.0.0.1:{port}"


@pytest.fixture
def gateway_log():
    return GatewayLog(recent_max=500)


def make_settings(users_url: str, orders_url: str, **overrides) -> Settings:
    base = dict(
        environment="test",
        api_keys=dict(API_KEYS),
        routes=[RouteEntry("/users", users_url, "users"), RouteEntry("/orders", orders_url, "orders")],
        cors_origins=[],
        health_timeout_sec=1,
        proxy_connect_timeout_sec=1,
        proxy_timeout_sec=5,
    )
    base.update(overrides)
    return Settings(**base)


def make_limiter(clock, global_max=100, auth_max=5, window=900, enabled=True) -> RateLimiter:
    limiter = RateLimiter(enabled=enabled, clock=clock)
    limiter.configure(GLOBAL_SCOPE, global_max, window)
    limiter.configure(AUTH_SCOPE, auth_max, window)
    return limiter


@pytest.fixture
def settings(users_backend, orders_backend):
    return make_settings(users_backend.url, orders_backend.url)


@pytest.fixture
def gateway_app(settings, clock, gateway_log):
    from api_gateway.app import create_app
    app = create_app(
        settings,
        rate_limiter=make_limiter(clock),
        health=HealthAggregator(settings.services, timeout_sec=1),
        log=gateway_log,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def gateway_client(gateway_app):
    with gateway_app.test_client() as c:
        yield c


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def limiter_factory():
    return make_limiter
