from __future__ import annotations

import logging

_HANDLER_NAME = "flowrunner"


def configure_logging(level: str = "INFO", fmt: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s") -> None:
    logger = logging.getLogger("flowrunner")
    logger.setLevel(level.upper())
    if any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
