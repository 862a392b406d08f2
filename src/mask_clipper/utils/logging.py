"""日志初始化。"""

from __future__ import annotations

import logging

NOISY_LOGGERS = ("PIL", "asyncio")


def setup_logging(verbose: bool = False) -> None:
    """初始化项目日志配置；verbose 时输出逐步的 DEBUG 信息。"""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s",
    )
    # 第三方库的调试输出过多
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
