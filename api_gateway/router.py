"""
路由分发：路径前缀 -> 后端服务。最长前缀优先，前缀须整段匹配（/users 不匹配 /usersX）。
公开路径（健康检查、文档、网关信息）为显式白名单，不经过 API Key 校验。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

PUBLIC_PATHS = ("/", "/docs", "/health", "/health/detailed", "/health/ready", "/health/live")

# 逐跳头不转发（RFC 7230 6.1），Host/Content-Length 由转发层重新生成
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})


@dataclass(frozen=True)
class RouteEntry:
    path_prefix: str
    target_base_url: str
    service_name: str
    auth_required: bool = True
    strip_prefix: bool = False
    # method -> 必填字段，如 {"POST": ("name", "email")}
    required_fields: Mapping[str, Tuple[str, ...]] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        prefix = "/" + self.path_prefix.strip("/")
        object.__setattr__(self, "path_prefix", prefix)
        object.__setattr__(self, "target_base_url", self.target_base_url.rstrip("/"))

    def matches(self, path: str) -> bool:
        if self.path_prefix == "/":
            return True
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")


@dataclass(frozen=True)
class RouteMatch:
    entry: RouteEntry
    upstream_path: str


class Router:
    """静态路由表，启动后只读，无需加锁。"""

    def __init__(self, entries: Iterable[RouteEntry], public_paths: Iterable[str] = PUBLIC_PATHS):
        # 前缀长者在前，保证最长匹配
        self._entries: List[RouteEntry] = sorted(entries, key=lambda e: len(e.path_prefix), reverse=True)
        self._public = frozenset(public_paths)

    @property
    def entries(self) -> List[RouteEntry]:
        return list(self._entries)

    def match(self, path: str) -> Optional[RouteMatch]:
        for entry in self._entries:
            if entry.matches(path):
                upstream = path
                if entry.strip_prefix:
                    upstream = path[len(entry.path_prefix):] or "/"
                return RouteMatch(entry, upstream)
        return None

    def is_public(self, path: str) -> bool:
        """精确匹配；/health/ 这类带尾斜杠的路径不在白名单内。"""
        return path in self._public

    def requires_auth(self, path: str, entry: Optional[RouteEntry] = None) -> bool:
        if self.is_public(path):
            return False
        return entry.auth_required if entry is not None else True

    def available_endpoints(self) -> List[str]:
        """404 响应中列出的顶层路径。"""
        top = ["/", "/docs", "/health"]
        for entry in sorted(self._entries, key=lambda e: e.path_prefix):
            if entry.path_prefix not in top:
                top.append(entry.path_prefix)
        return top


def forwardable_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """去掉逐跳头（含 Connection 中声明的头），保留端到端头。"""
    pairs = list(headers)
    extra = set()
    for k, v in pairs:
        if k.lower() == "connection":
            extra.update(t.strip().lower() for t in v.split(",") if t.strip())
    out: Dict[str, str] = {}
    for k, v in pairs:
        lk = k.lower()
        if lk in HOP_BY_HOP_HEADERS or lk in extra:
            continue
        out[k] = v
    return out
