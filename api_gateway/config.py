"""
网关配置：环境变量 + 可选路由文件，启动时加载一次，运行期只读。
- 路由：USERS_SERVICE_URL / ORDERS_SERVICE_URL，以及任意 <NAME>_SERVICE_URL；
  GATEWAY_ROUTES_PATH 指向 JSON（routes 对象或数组）或 YAML（routes 数组）文件。
- 凭证：GATEWAY_API_KEYS="env:key,env2:key2"。
优先级：环境变量 > 文件 > 内置默认值。
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .router import RouteEntry

DEFAULT_SERVICES: Dict[str, str] = {
    "users": "http://localhost:4001",
    "orders": "http://localhost:4002",
}
DEFAULT_API_KEYS: Dict[str, str] = {
    "development": "dev-api-key-12345",
    "production": "prod-api-key-67890",
}
DEV_CORS_ORIGINS = ["http://localhost:3000", "http://localhost:3001", "http://localhost:5173"]

_SERVICE_URL_ENV = re.compile(r"^([A-Z0-9_]+)_SERVICE_URL$")


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    try:
        return int(env.get(key, default))
    except (TypeError, ValueError):
        return default


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    try:
        return float(env.get(key, default))
    except (TypeError, ValueError):
        return default


def _bool_env(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _split_list(raw: str) -> List[str]:
    return [p.strip() for p in raw.replace(";", ",").split(",") if p.strip()]


def parse_api_keys(raw: str) -> Dict[str, str]:
    """解析 "env:key,env2:key2"；无 env 前缀的 key 归入 default。"""
    keys: Dict[str, str] = {}
    for part in _split_list(raw):
        if ":" in part:
            env_name, key = part.split(":", 1)
            if key.strip():
                keys[env_name.strip() or "default"] = key.strip()
        else:
            keys["default"] = part
    return keys


def _entry_from_item(item: Dict[str, Any]) -> Optional[RouteEntry]:
    """从路由文件单条记录构造 RouteEntry：service/id + path_prefix + upstream。"""
    upstream = (item.get("upstream") or item.get("target") or "").strip().rstrip("/")
    service = (item.get("service") or item.get("id") or "").strip().lower()
    prefix = (item.get("path_prefix") or "").strip()
    if not prefix and service:
        prefix = "/" + service
    if not service and prefix:
        service = prefix.strip("/").split("/")[0]
    if not (upstream and prefix and service):
        return None
    required = item.get("required_fields") or {}
    if isinstance(required, list):
        required = {"POST": required}
    return RouteEntry(
        path_prefix=prefix,
        target_base_url=upstream,
        service_name=service,
        auth_required=bool(item.get("auth", True)),
        strip_prefix=bool(item.get("strip_prefix", False)),
        required_fields={str(k).upper(): tuple(v or ()) for k, v in required.items()},
    )


def _load_routes_from_file(path: str) -> List[RouteEntry]:
    """从文件加载路由：.json 或 .yaml/.yml。"""
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    if path.lower().endswith((".yaml", ".yml")):
        import yaml
        data = yaml.safe_load(content) or {}
    else:
        data = json.loads(content) if content.strip() else {}
    items = data.get("routes") or []
    entries: List[RouteEntry] = []
    if isinstance(items, dict):
        # {"users": "http://..."} 简写
        items = [{"service": k, "upstream": v} for k, v in items.items() if k and v]
    for item in items:
        if not isinstance(item, dict):
            continue
        entry = _entry_from_item(item)
        if entry is not None:
            entries.append(entry)
    return entries


def load_routes(env: Optional[Mapping[str, str]] = None, routes_path: Optional[str] = None) -> List[RouteEntry]:
    """加载路由表：<NAME>_SERVICE_URL 环境变量，其次路由文件，最后内置 users/orders。"""
    env = os.environ if env is None else env
    routes: Dict[str, RouteEntry] = {}
    for key, val in env.items():
        m = _SERVICE_URL_ENV.match(key)
        if m and (val or "").strip():
            service = m.group(1).lower()
            routes["/" + service] = RouteEntry("/" + service, val.strip().rstrip("/"), service)
    path = env.get("GATEWAY_ROUTES_PATH", "") if routes_path is None else routes_path
    if path and os.path.isfile(path):
        for entry in _load_routes_from_file(path):
            routes.setdefault(entry.path_prefix, entry)
    for service, url in DEFAULT_SERVICES.items():
        routes.setdefault("/" + service, RouteEntry("/" + service, url, service))
    return list(routes.values())


@dataclass
class Settings:
    """网关运行配置；create_app 只读使用。"""

    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "info"
    log_dir: str = ""
    log_recent_max: int = 1000
    api_keys: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_API_KEYS))
    routes: List[RouteEntry] = field(default_factory=list)
    rate_limit_enabled: bool = True
    rate_limit_window_sec: float = 900
    rate_limit_max: int = 100
    auth_rate_limit_window_sec: float = 900
    auth_rate_limit_max: int = 5
    proxy_timeout_sec: float = 30
    proxy_connect_timeout_sec: float = 5
    health_timeout_sec: float = 5
    pool_num_pools: int = 64
    pool_maxsize: int = 16
    max_body_mb: int = 10
    cors_origins: List[str] = field(default_factory=lambda: list(DEV_CORS_ORIGINS))
    trust_proxy: bool = False
    ready_requires_backends: bool = False
    version: str = "1.0.0"

    def __post_init__(self):
        if not self.routes:
            self.routes = [RouteEntry("/" + s, u, s) for s, u in DEFAULT_SERVICES.items()]

    @property
    def services(self) -> Dict[str, str]:
        """service_name -> base_url，供健康聚合使用。"""
        return {r.service_name: r.target_base_url for r in self.routes}


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """从环境变量构造 Settings；非法数值回退默认值。"""
    env = os.environ if env is None else env
    environment = (env.get("APP_ENV") or env.get("NODE_ENV") or "development").strip()
    keys_raw = (env.get("GATEWAY_API_KEYS") or "").strip()
    origins_raw = (env.get("GATEWAY_CORS_ORIGINS") or "").strip()
    if origins_raw:
        origins = _split_list(origins_raw)
    else:
        origins = [] if environment == "production" else list(DEV_CORS_ORIGINS)
    port = _int_env(env, "PORT", _int_env(env, "GATEWAY_PORT", 4000))
    return Settings(
        environment=environment,
        host=(env.get("GATEWAY_HOST") or "0.0.0.0").strip(),
        port=port,
        log_level=(env.get("LOG_LEVEL") or "info").strip().lower(),
        log_dir=(env.get("GATEWAY_LOG_DIR") or "").strip(),
        log_recent_max=_int_env(env, "GATEWAY_LOG_RECENT_MAX", 1000),
        api_keys=parse_api_keys(keys_raw) if keys_raw else dict(DEFAULT_API_KEYS),
        routes=load_routes(env),
        rate_limit_enabled=_bool_env(env, "GATEWAY_RATE_LIMIT_ENABLED", True),
        rate_limit_window_sec=_float_env(env, "GATEWAY_RATE_LIMIT_WINDOW_SEC", 900),
        rate_limit_max=_int_env(env, "GATEWAY_RATE_LIMIT_MAX", 100),
        auth_rate_limit_window_sec=_float_env(env, "GATEWAY_AUTH_RATE_LIMIT_WINDOW_SEC", 900),
        auth_rate_limit_max=_int_env(env, "GATEWAY_AUTH_RATE_LIMIT_MAX", 5),
        proxy_timeout_sec=_float_env(env, "GATEWAY_PROXY_TIMEOUT_SEC", 30),
        proxy_connect_timeout_sec=_float_env(env, "GATEWAY_PROXY_CONNECT_TIMEOUT_SEC", 5),
        health_timeout_sec=_float_env(env, "GATEWAY_HEALTH_TIMEOUT_SEC", 5),
        pool_num_pools=_int_env(env, "GATEWAY_POOL_NUM_POOLS", 64),
        pool_maxsize=_int_env(env, "GATEWAY_POOL_MAXSIZE", 16),
        max_body_mb=_int_env(env, "GATEWAY_MAX_BODY_MB", 10),
        cors_origins=origins,
        trust_proxy=_bool_env(env, "GATEWAY_TRUST_PROXY", False),
        ready_requires_backends=_bool_env(env, "GATEWAY_READY_REQUIRES_BACKENDS", False),
    )
