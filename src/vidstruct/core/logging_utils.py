"""日志：各阶段 logger 都挂在 ``vidstruct`` 命名空间下，由 CLI 入口统一设置级别。"""

from __future__ import annotations

import logging
from typing import Optional


def setup_logging(level: str = "INFO") -> None:
    """CLI 每个命令开始时调用；未知级别名按 INFO 处理。"""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "vidstruct")
