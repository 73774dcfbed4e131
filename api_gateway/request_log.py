"""
网关结构化日志：每条日志为单行 JSON（level、message、requestId 及字段）。
- 输出经 QueueHandler 异步写出，日志不阻塞响应。
- GATEWAY_LOG_DIR 配置时额外写 combined.log 与 error.log。
- GatewayLog 在内存保留最近 N 条记录，可按 requestId 检索。
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import queue
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

LOGGER_NAME = "gateway"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_listener: Optional[logging.handlers.QueueListener] = None
_listener_lock = threading.Lock()


def redact_key(key: Optional[str]) -> str:
    """凭证脱敏：前 8 位 + "..."；短 key 全部打码。"""
    if not key:
        return "none"
    if len(key) <= 8:
        return "***"
    return key[:8] + "..."


def level_from_name(name: str) -> int:
    return _LEVELS.get((name or "").strip().lower(), logging.INFO)


class _JSONLineFormatter(logging.Formatter):
    """GatewayLog 的消息本身已是单行 JSON，原样输出；其它模块的文本日志包装成同样结构。"""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if msg.startswith("{") and "\n" not in msg:
            return msg
        return json.dumps({
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname.lower(),
            "message": msg,
            "logger": record.name,
        }, ensure_ascii=False)


def configure_logging(level: str = "info", log_dir: str = "") -> logging.Logger:
    """配置 gateway logger：控制台 +（可选）文件，经队列异步写出。可重复调用。"""
    global _listener
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level_from_name(level))
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, "combined.log"), encoding="utf-8"))
        err_handler = logging.FileHandler(os.path.join(log_dir, "error.log"), encoding="utf-8")
        err_handler.setLevel(logging.ERROR)
        handlers.append(err_handler)
    for h in handlers:
        h.setFormatter(_JSONLineFormatter())
    q: "queue.Queue[logging.LogRecord]" = queue.Queue(-1)
    with _listener_lock:
        if _listener is not None:
            _listener.stop()
            for h in _listener.handlers:
                h.close()
        for h in list(logger.handlers):
            if isinstance(h, logging.handlers.QueueHandler):
                logger.removeHandler(h)
        logger.addHandler(logging.handlers.QueueHandler(q))
        logger.propagate = False
        _listener = logging.handlers.QueueListener(q, *handlers, respect_handler_level=True)
        _listener.start()
    return logger


def shutdown_logging() -> None:
    global _listener
    with _listener_lock:
        if _listener is not None:
            _listener.stop()
            for h in _listener.handlers:
                h.close()
            _listener = None


class GatewayLog:
    """请求/错误/审计事件记录器；进程内共享，线程安全。"""

    def __init__(self, name: str = LOGGER_NAME, recent_max: int = 1000):
        self._logger = logging.getLogger(name)
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max(1, recent_max))
        self._lock = threading.Lock()

    def event(self, level: str, message: str, request_id: str = "", **fields: Any) -> Dict[str, Any]:
        record = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "level": "warning" if level == "warn" else level,
            "message": message,
            "requestId": request_id,
            **fields,
        }
        with self._lock:
            self._recent.append(record)
        self._logger.log(level_from_name(level), json.dumps(record, ensure_ascii=False, default=str))
        return record

    def request(self, request_id: str, method: str, path: str, status: int, elapsed_ms: float, **fields: Any):
        """每个请求恰好一条。"""
        level = "info" if status < 500 else "error"
        return self.event(level, "request", request_id, method=method, path=path, status=status,
                          elapsedMs=elapsed_ms, **fields)

    def error(self, request_id: str, code: str, status: int, message: str, **fields: Any):
        """每个错误响应恰好一条；5xx 记 error，其余记 warning。"""
        level = "error" if status >= 500 else "warning"
        return self.event(level, "error", request_id, code=code, status=status, error=message, **fields)

    def search(self, request_id: str = "", message: str = "", limit: int = 100) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        with self._lock:
            for r in self._recent:
                if request_id and r.get("requestId") != request_id:
                    continue
                if message and r.get("message") != message:
                    continue
                out.append(r)
                if len(out) >= limit:
                    break
        return out
