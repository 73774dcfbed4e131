"""
请求上下文：入口处生成 requestId 与起始时间，贯穿后续各阶段。
上下文不可变；鉴权阶段通过 authenticated() 得到带环境名与 key 的新副本。
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

UNKNOWN_ENVIRONMENT = "unknown"


def new_request_id() -> str:
    """req_<毫秒时间戳>_<9 位随机>。"""
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    start_time: float
    client_identity: str
    environment: str = UNKNOWN_ENVIRONMENT
    api_key: Optional[str] = None

    def authenticated(self, environment: str, api_key: str) -> "RequestContext":
        return replace(self, environment=environment, api_key=api_key)

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.start_time) * 1000, 2)


def build_context(remote_addr: Optional[str]) -> RequestContext:
    return RequestContext(
        request_id=new_request_id(),
        start_time=time.perf_counter(),
        client_identity=remote_addr or "0.0.0.0",
    )
