"""
网关限流：按 (scope, identity) 的内存固定窗口计数。
- global：每个客户端 15 分钟 100 次；auth：鉴权失败 15 分钟 5 次（防暴力猜测 Key）。
- 计数与判定在同一把锁内完成，并发请求不会越过上限。
- 实例由 create_app 注入，不使用模块级全局状态；时钟可注入便于测试。
"""
from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional, Tuple

GLOBAL_SCOPE = "global"
AUTH_SCOPE = "auth"


class RateDecision(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # 距窗口重置的秒数；放行时同样给出，供 RateLimit-Reset 头


class _Window:
    __slots__ = ("start", "count")

    def __init__(self, start: float):
        self.start = start
        self.count = 0


class RateLimiter:
    """固定窗口限流器，线程安全。"""

    def __init__(self, enabled: bool = True, clock: Optional[Callable[[], float]] = None, max_tracked: int = 10000,
                 prune_interval_sec: float = 1.0):
        self.enabled = enabled
        # 窗口数达到上限时：过期清理每 prune_interval_sec 至多一次，仍满则淘汰最早的窗口
        self.max_tracked = max(1, max_tracked)
        self.prune_interval_sec = prune_interval_sec
        self._last_prune = float("-inf")
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._scopes: Dict[str, Tuple[int, float]] = {}  # scope -> (max, window_sec)
        self._windows: Dict[Tuple[str, str], _Window] = {}

    def configure(self, scope: str, max_requests: int, window_sec: float) -> "RateLimiter":
        with self._lock:
            self._scopes[scope] = (max(0, int(max_requests)), float(window_sec))
        return self

    def has_scope(self, scope: str) -> bool:
        return scope in self._scopes

    def limits(self, scope: str) -> Tuple[int, float]:
        try:
            return self._scopes[scope]
        except KeyError:
            raise KeyError(f"rate limit scope not configured: {scope}") from None

    def _current(self, scope: str, identity: str, now: float, window_sec: float) -> _Window:
        key = (scope, identity)
        win = self._windows.get(key)
        if win is None or now - win.start >= window_sec:
            win = _Window(now)
            # 重新插入，字典顺序即窗口起始顺序
            self._windows.pop(key, None)
            self._windows[key] = win
        return win

    def _make_room_locked(self, key: Tuple[str, str], now: float) -> None:
        if key in self._windows or len(self._windows) < self.max_tracked:
            return
        if now - self._last_prune >= self.prune_interval_sec:
            self._last_prune = now
            self._prune_locked(now)
        while len(self._windows) >= self.max_tracked:
            del self._windows[next(iter(self._windows))]

    @staticmethod
    def _retry_after(win: _Window, now: float, window_sec: float) -> int:
        return max(1, math.ceil(win.start + window_sec - now))

    def admit(self, scope: str, identity: str) -> RateDecision:
        """计数一次并判定；超过上限返回 allowed=False 与 retry_after。"""
        max_requests, window_sec = self.limits(scope)
        if not self.enabled:
            return RateDecision(True, max_requests, max_requests, 0)
        with self._lock:
            now = self._clock()
            self._make_room_locked((scope, identity), now)
            win = self._current(scope, identity, now, window_sec)
            retry_after = self._retry_after(win, now, window_sec)
            if win.count >= max_requests:
                return RateDecision(False, max_requests, 0, retry_after)
            win.count += 1
            return RateDecision(True, max_requests, max_requests - win.count, retry_after)

    def release(self, scope: str, identity: str) -> None:
        """归还一次 admit 占用的名额（如鉴权成功后不计入失败次数）。"""
        _, window_sec = self.limits(scope)
        if not self.enabled:
            return
        with self._lock:
            win = self._windows.get((scope, identity))
            if win is not None and win.count > 0 and self._clock() - win.start < window_sec:
                win.count -= 1

    def is_blocked(self, scope: str, identity: str) -> Optional[int]:
        """不计数，仅查询：已达上限返回 retry_after 秒数，否则 None。"""
        max_requests, window_sec = self.limits(scope)
        if not self.enabled:
            return None
        with self._lock:
            now = self._clock()
            win = self._windows.get((scope, identity))
            if win is None or now - win.start >= window_sec:
                return None
            if win.count >= max_requests:
                return self._retry_after(win, now, window_sec)
            return None

    def reset(self, scope: Optional[str] = None) -> None:
        with self._lock:
            if scope is None:
                self._windows.clear()
            else:
                for key in [k for k in self._windows if k[0] == scope]:
                    del self._windows[key]

    def tracked(self) -> int:
        with self._lock:
            return len(self._windows)

    def _prune_locked(self, now: float) -> None:
        for key in list(self._windows):
            _, window_sec = self._scopes.get(key[0], (0, 0.0))
            if now - self._windows[key].start >= window_sec:
                del self._windows[key]


def create_rate_limiter(settings, clock: Optional[Callable[[], float]] = None) -> RateLimiter:
    """按 Settings 构造带 global / auth 两个 scope 的限流器。"""
    limiter = RateLimiter(enabled=settings.rate_limit_enabled, clock=clock)
    limiter.configure(GLOBAL_SCOPE, settings.rate_limit_max, settings.rate_limit_window_sec)
    limiter.configure(AUTH_SCOPE, settings.auth_rate_limit_max, settings.auth_rate_limit_window_sec)
    return limiter
