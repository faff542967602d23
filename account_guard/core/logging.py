import logging
import sys

from loguru import logger


class _InterceptHandler(logging.Handler):
    """把標準 logging（服務層、uvicorn、apscheduler）轉送到 loguru。"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    logger.remove()
    logger.add(sys.stdout, level="INFO",
               backtrace=True, diagnose=False,
               format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | {message}")
    logging.basicConfig(handlers=[_InterceptHandler()], level=logging.INFO, force=True)
    return logger
