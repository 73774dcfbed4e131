"""
API 网关：users / orders 后端的统一入口。
API Key 鉴权、限流、请求/响应信封、结构化日志、后端健康聚合。
"""
from .app import create_app, main
from .config import Settings, load_settings

__version__ = "1.0.0"

__all__ = ["create_app", "main", "Settings", "load_settings", "__version__"]
