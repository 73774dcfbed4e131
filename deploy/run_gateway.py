#!/usr/bin/env python3
"""在容器内启动网关：路由、凭证、限流参数全部来自环境变量。"""
import os
import sys

sys.path.insert(0, os.environ.get("APP_ROOT", "/app"))

from api_gateway.app import main

main()
