"""
配置加载：环境变量默认值/覆盖、凭证解析、路由文件（JSON/YAML）与优先级。
"""
from __future__ import annotations

import json

from api_gateway.config import (
    DEFAULT_API_KEYS,
    DEV_CORS_ORIGINS,
    Settings,
    load_routes,
    load_settings,
    parse_api_keys,
)


def _by_prefix(routes):
    return {r.path_prefix: r for r in routes}


def test_defaults_from_empty_env():
    s = load_settings({})
    assert s.environment == "development"
    assert s.port == 4000
    assert s.api_keys == DEFAULT_API_KEYS
    assert s.rate_limit_max == 100
    assert s.rate_limit_window_sec == 900
    assert s.auth_rate_limit_max == 5
    assert s.max_body_mb == 10
    assert s.cors_origins == DEV_CORS_ORIGINS
    assert s.services == {"users": "http://localhost:4001", "orders": "http://localhost:4002"}


def test_env_overrides():
    s = load_settings({
        "NODE_ENV": "staging",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "USERS_SERVICE_URL": "http://users.internal:9001/",
        "GATEWAY_API_KEYS": "staging:stage-key-1,ci:ci-key-2",
        "GATEWAY_RATE_LIMIT_MAX": "7",
        "GATEWAY_RATE_LIMIT_ENABLED": "false",
        "GATEWAY_CORS_ORIGINS": "https://a.example.com; https://b.example.com",
        "GATEWAY_READY_REQUIRES_BACKENDS": "1",
    })
    assert s.environment == "staging"
    assert s.port == 8080
    assert s.log_level == "debug"
    assert s.services["users"] == "http://users.internal:9001"
    assert s.services["orders"] == "http://localhost:4002"
    assert s.api_keys == {"staging": "stage-key-1", "ci": "ci-key-2"}
    assert s.rate_limit_max == 7
    assert s.rate_limit_enabled is False
    assert s.cors_origins == ["https://a.example.com", "https://b.example.com"]
    assert s.ready_requires_backends is True


def test_app_env_takes_precedence_over_node_env():
    assert load_settings({"APP_ENV": "production", "NODE_ENV": "development"}).environment == "production"


def test_invalid_numbers_fall_back_to_defaults():
    s = load_settings({"PORT": "abc", "GATEWAY_RATE_LIMIT_MAX": "", "GATEWAY_PROXY_TIMEOUT_SEC": "soon"})
    assert s.port == 4000
    assert s.rate_limit_max == 100
    assert s.proxy_timeout_sec == 30


def test_gateway_port_used_when_port_unset():
    assert load_settings({"GATEWAY_PORT": "5000"}).port == 5000


def test_production_without_origins_disables_cors():
    assert load_settings({"APP_ENV": "production"}).cors_origins == []


def test_parse_api_keys():
    assert parse_api_keys("dev:k1, prod:k2") == {"dev": "k1", "prod": "k2"}
    assert parse_api_keys("lonely-key") == {"default": "lonely-key"}
    assert parse_api_keys("dev:, prod:k2") == {"prod": "k2"}
    assert parse_api_keys("") == {}


def test_extra_service_from_env():
    routes = _by_prefix(load_routes({"PAYMENTS_SERVICE_URL": "http://payments:4005"}))
    assert routes["/payments"].target_base_url == "http://payments:4005"
    assert routes["/payments"].service_name == "payments"
    assert "/users" in routes and "/orders" in routes


def test_routes_from_json_file(tmp_path):
    path = tmp_path / "routes.json"
    path.write_text(json.dumps({"routes": [
        {"service": "users", "upstream": "http://users-file:1", "required_fields": ["name", "email"]},
        {"id": "catalog", "path_prefix": "/api/catalog", "upstream": "http://catalog:2",
         "auth": False, "strip_prefix": True},
        {"service": "broken"},
    ]}), encoding="utf-8")
    routes = _by_prefix(load_routes({"GATEWAY_ROUTES_PATH": str(path)}))
    assert routes["/users"].target_base_url == "http://users-file:1"
    assert routes["/users"].required_fields == {"POST": ("name", "email")}
    catalog = routes["/api/catalog"]
    assert catalog.service_name == "catalog"
    assert catalog.auth_required is False
    assert catalog.strip_prefix is True
    assert "/broken" not in routes
    assert routes["/orders"].target_base_url == "http://localhost:4002"


def test_routes_json_shorthand(tmp_path):
    path = tmp_path / "routes.json"
    path.write_text(json.dumps({"routes": {"orders": "http://orders-file:3/"}}), encoding="utf-8")
    routes = _by_prefix(load_routes({}, routes_path=str(path)))
    assert routes["/orders"].target_base_url == "http://orders-file:3"


def test_routes_from_yaml_file(tmp_path):
    path = tmp_path / "routes.yaml"
    path.write_text(
        "routes:\n"
        "  - service: orders\n"
        "    upstream: http://orders-yaml:4\n"
        "    required_fields:\n"
        "      POST: [productId, quantity]\n",
        encoding="utf-8",
    )
    routes = _by_prefix(load_routes({"GATEWAY_ROUTES_PATH": str(path)}))
    assert routes["/orders"].target_base_url == "http://orders-yaml:4"
    assert routes["/orders"].required_fields == {"POST": ("productId", "quantity")}


def test_env_beats_file(tmp_path):
    path = tmp_path / "routes.json"
    path.write_text(json.dumps({"routes": {"users": "http://from-file:1"}}), encoding="utf-8")
    routes = _by_prefix(load_routes({"USERS_SERVICE_URL": "http://from-env:1", "GATEWAY_ROUTES_PATH": str(path)}))
    assert routes["/users"].target_base_url == "http://from-env:1"


def test_missing_routes_file_ignored(tmp_path):
    routes = _by_prefix(load_routes({"GATEWAY_ROUTES_PATH": str(tmp_path / "absent.json")}))
    assert set(routes) == {"/users", "/orders"}


def test_settings_default_routes():
    assert Settings().services == {"users": "http://localhost:4001", "orders": "http://localhost:4002"}
