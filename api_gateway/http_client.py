"""
网关 HTTP 转发：urllib3 连接池复用 TCP 连接，有界超时，不重试。
- 成功：返回后端状态码、响应头、响应体（已解压）。
- 网络失败/超时/连接拒绝：返回 ServiceUnavailable，底层错误只写服务端日志。
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, NamedTuple, Optional, Tuple

import urllib3
from urllib3.exceptions import HTTPError as _Urllib3Error

from .errors import ServiceUnavailable

logger = logging.getLogger("gateway.http_client")

# 转发回客户端时由网关重新生成
_DROP_RESPONSE_HEADERS = frozenset({"transfer-encoding", "connection", "content-encoding", "content-length", "keep-alive"})


class BackendResponse(NamedTuple):
    status: int
    headers: Dict[str, str]
    body: bytes

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return ""

    def json(self) -> Tuple[bool, Any]:
        """(是否 JSON, 解析结果)；空 body 视为 JSON null。"""
        ct = self.content_type.lower()
        if not self.body:
            return ("json" in ct or not ct), None
        if "json" not in ct:
            return False, None
        try:
            return True, json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return False, None


def create_pool(num_pools: int = 64, maxsize: int = 16) -> urllib3.PoolManager:
    pool = urllib3.PoolManager(num_pools=num_pools, maxsize=maxsize, block=False)
    logger.info("gateway http pool created num_pools=%s maxsize=%s", num_pools, maxsize)
    return pool


def classify_failure(exc: BaseException) -> str:
    """把 urllib3 异常归类为简短原因，不暴露内部地址与堆栈。"""
    reason = getattr(exc, "reason", None) or exc
    # NewConnectionError 继承自 ConnectTimeoutError，须先判断
    if isinstance(reason, urllib3.exceptions.NewConnectionError):
        return "connection failed"
    if isinstance(reason, urllib3.exceptions.TimeoutError):
        return "timeout"
    if isinstance(reason, urllib3.exceptions.ProtocolError):
        return "protocol error"
    return "unreachable"


class ProxyForwarder:
    """把已放行请求转发到后端；连接池归实例所有。"""

    def __init__(
        self,
        pool: Optional[urllib3.PoolManager] = None,
        timeout_sec: float = 30,
        connect_timeout_sec: float = 5,
    ):
        self._pool = pool or create_pool()
        self.timeout = urllib3.util.Timeout(connect=connect_timeout_sec, read=timeout_sec)

    @property
    def pool(self) -> urllib3.PoolManager:
        return self._pool

    def forward(
        self,
        method: str,
        target_base_url: str,
        path: str,
        headers: Dict[str, str],
        body: Optional[bytes],
        service_name: str = "",
        query_string: str = "",
        request_id: str = "",
    ) -> Tuple[Optional[BackendResponse], Optional[ServiceUnavailable]]:
        url = target_base_url.rstrip("/") + "/" + path.lstrip("/")
        if query_string:
            url += "?" + query_string
        try:
            resp = self._pool.request(
                method.upper(),
                url,
                body=body or None,
                headers=headers,
                timeout=self.timeout,
                retries=False,
                redirect=False,
                preload_content=True,
                decode_content=True,
            )
        except _Urllib3Error as e:
            reason = classify_failure(e)
            logger.warning(
                "forward_failed service=%s method=%s url=%s reason=%s error=%s request_id=%s",
                service_name, method, url, reason, e, request_id,
            )
            return None, ServiceUnavailable(service_name, underlying=f"{reason}: {e}")
        out_headers = {k: v for k, v in resp.headers.items() if k.lower() not in _DROP_RESPONSE_HEADERS}
        return BackendResponse(resp.status, out_headers, resp.data or b""), None

    def close(self) -> None:
        self._pool.clear()
