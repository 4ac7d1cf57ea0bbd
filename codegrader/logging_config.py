"""日志初始化。"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """按配置级别初始化根日志器；重复调用不会叠加 handler。"""

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("codegrader").setLevel(level.upper())
    # httpx 在 INFO 级别会逐条打印请求，评测时过于嘈杂
    logging.getLogger("httpx").setLevel(logging.WARNING)
