"""
API Key 校验：x-api-key 或 Authorization: Bearer <key>。
凭证集合（环境名 -> key）启动时加载，运行期只读；比较使用 hmac.compare_digest。
日志中 key 只保留前 8 位。
"""
from __future__ import annotations

import hmac
from typing import Dict, Mapping, Optional, Tuple

from .errors import GatewayError, InvalidCredential, MissingCredential
from .request_log import GatewayLog, redact_key

API_KEY_HEADER = "X-API-Key"
_BEARER = "bearer "


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """优先 x-api-key，其次 Bearer token；空白视为未提供。"""
    key = (headers.get(API_KEY_HEADER) or "").strip()
    if key:
        return key
    auth = (headers.get("Authorization") or "").strip()
    if auth.lower() == _BEARER.strip():
        return None
    if auth.lower().startswith(_BEARER):
        return auth[len(_BEARER):].strip() or None
    return auth or None


class KeyValidator:
    """校验 key 是否属于凭证集合，成功返回对应环境名。"""

    def __init__(self, credentials: Mapping[str, str], log: Optional[GatewayLog] = None):
        self._credentials: Dict[str, str] = {env: key for env, key in credentials.items() if key}
        self._log = log

    @property
    def environments(self):
        return sorted(self._credentials)

    def validate(self, presented: Optional[str], request_id: str = "") -> Tuple[Optional[str], Optional[GatewayError]]:
        if not presented:
            self._audit("warning", "auth_missing_key", request_id, None)
            return None, MissingCredential()
        matched = None
        for env, key in self._credentials.items():
            # 遍历全部 key，不提前返回
            if hmac.compare_digest(presented.encode("utf-8"), key.encode("utf-8")):
                matched = env
        if matched is None:
            self._audit("warning", "auth_invalid_key", request_id, presented)
            return None, InvalidCredential()
        self._audit("debug", "auth_ok", request_id, presented, environment=matched)
        return matched, None

    def _audit(self, level: str, message: str, request_id: str, key: Optional[str], **fields) -> None:
        if self._log is not None:
            self._log.event(level, message, request_id, apiKey=redact_key(key), **fields)
