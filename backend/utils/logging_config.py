"""日志配置：全部模块使用 logging.getLogger(__name__)，在应用启动时统一初始化"""

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    # 重复调用（如 uvicorn reload）时不重复挂 handler
    if not any(getattr(h, "_vikini", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._vikini = True
        root.addHandler(handler)
    root.setLevel(log_level)

    # httpx 每个请求都会打 INFO，压到 WARNING
    logging.getLogger("httpx").setLevel(logging.WARNING)
