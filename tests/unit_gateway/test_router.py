"""
路由匹配：最长前缀、整段匹配、去前缀、公开路径、逐跳头过滤。
"""
from __future__ import annotations

from api_gateway.router import PUBLIC_PATHS, RouteEntry, Router, forwardable_headers


def _router():
    return Router([
        RouteEntry("/users", "http://users:4001/", "users"),
        RouteEntry("/users/admin", "http://admin:4003", "admin", strip_prefix=True),
        RouteEntry("/orders", "http://orders:4002", "orders"),
    ])


def test_entry_normalizes_prefix_and_url():
    e = RouteEntry("users/", "http://users:4001/", "users")
    assert e.path_prefix == "/users"
    assert e.target_base_url == "http://users:4001"


def test_longest_prefix_wins():
    m = _router().match("/users/admin/roles")
    assert m.entry.service_name == "admin"
    assert m.upstream_path == "/roles"


def test_prefix_must_match_whole_segment():
    r = _router()
    assert r.match("/usersX") is None
    assert r.match("/users-archive") is None
    assert r.match("/users").entry.service_name == "users"
    assert r.match("/users/1").upstream_path == "/users/1"


def test_strip_prefix_of_exact_path_becomes_root():
    assert _router().match("/users/admin").upstream_path == "/"


def test_no_match():
    assert _router().match("/payments/1") is None


def test_public_paths():
    r = _router()
    for p in PUBLIC_PATHS:
        assert r.is_public(p)
        assert not r.requires_auth(p)
    assert not r.is_public("/health/")
    assert not r.is_public("/users")
    assert r.requires_auth("/users", r.match("/users").entry)


def test_requires_auth_respects_route_flag():
    entry = RouteEntry("/catalog", "http://catalog", "catalog", auth_required=False)
    r = Router([entry])
    assert not r.requires_auth("/catalog/1", entry)
    assert r.requires_auth("/unknown")


def test_available_endpoints():
    assert _router().available_endpoints() == ["/", "/docs", "/health", "/orders", "/users", "/users/admin"]


def test_forwardable_headers_drops_hop_by_hop():
    out = forwardable_headers([
        ("Host", "gateway:4000"),
        ("Connection", "keep-alive, X-Secret-Hop"),
        ("Keep-Alive", "timeout=5"),
        ("Content-Length", "12"),
        ("Transfer-Encoding", "chunked"),
        ("X-Secret-Hop", "1"),
        ("Content-Type", "application/json"),
        ("X-API-Key", "k"),
    ])
    assert out == {"Content-Type": "application/json", "X-API-Key": "k"}
