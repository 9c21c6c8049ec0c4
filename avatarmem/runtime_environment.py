from __future__ import annotations

import logging
import sys
from typing import Any, Optional, Union


def configure_logging(*, level: Optional[Union[int, str]] = None) -> Any:
    if level is None:
        from avatarmem.config import LOG_LEVEL

        level = LOG_LEVEL
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    logger = logging.getLogger("avatarmem.runtime")

    # Provider SDKs log every request at INFO
    for logger_name in ["httpx", "openai", "urllib3"]:
        logging.getLogger(logger_name).setLevel(max(level, logging.WARNING))

    return logger
