"""
后端健康聚合：并发 GET <base_url>/health（默认 5s 超时），2xx 为健康。
聚合：全部健康 healthy；部分不健康 degraded；全部不健康 unhealthy。
无状态分类器，不保留历史。
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Mapping, NamedTuple, Optional

import urllib3
from urllib3.exceptions import HTTPError as _Urllib3Error

from .http_client import classify_failure, create_pool

logger = logging.getLogger("gateway.health")

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DEGRADED = "degraded"


class ServiceHealth(NamedTuple):
    status: str
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, object]:
        d: Dict[str, object] = {"status": self.status}
        if self.status_code is not None:
            d["statusCode"] = self.status_code
        if self.response_time_ms is not None:
            d["responseTimeMs"] = self.response_time_ms
        if self.reason:
            d["error"] = self.reason
        return d


def aggregate(results: Mapping[str, ServiceHealth]) -> str:
    unhealthy = sum(1 for r in results.values() if r.status != HEALTHY)
    if unhealthy == 0:
        return HEALTHY
    if unhealthy == len(results):
        return UNHEALTHY
    return DEGRADED


class HealthAggregator:
    """对静态配置的后端做健康探测。"""

    def __init__(
        self,
        services: Mapping[str, str],
        pool: Optional[urllib3.PoolManager] = None,
        timeout_sec: float = 5,
        health_path: str = "/health",
    ):
        self.services = dict(services)
        self.timeout_sec = timeout_sec
        self.health_path = health_path
        self._pool = pool or create_pool(num_pools=8, maxsize=4)

    def check_one(self, service: str, base_url: str) -> ServiceHealth:
        url = base_url.rstrip("/") + self.health_path
        started = time.perf_counter()
        try:
            r = self._pool.request(
                "GET", url,
                timeout=urllib3.util.Timeout(total=self.timeout_sec),
                retries=False,
            )
        except _Urllib3Error as e:
            reason = classify_failure(e)
            logger.debug("health check failed service=%s url=%s err=%s", service, url, e)
            return ServiceHealth(UNHEALTHY, None, None, reason)
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        if 200 <= r.status < 300:
            return ServiceHealth(HEALTHY, r.status, elapsed)
        return ServiceHealth(UNHEALTHY, r.status, elapsed, f"HTTP {r.status}")

    def check_all(self) -> Dict[str, ServiceHealth]:
        if not self.services:
            return {}
        with ThreadPoolExecutor(max_workers=len(self.services)) as pool:
            futures = {name: pool.submit(self.check_one, name, url) for name, url in self.services.items()}
            return {name: f.result() for name, f in futures.items()}

    def summary(self) -> Dict[str, object]:
        results = self.check_all()
        return {
            "status": aggregate(results),
            "services": {name: r.to_dict() for name, r in results.items()},
        }
