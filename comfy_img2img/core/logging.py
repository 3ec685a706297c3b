import sys
import logging
from loguru import logger

from comfy_img2img.core.config import settings


LOG_FORMAT = (
    '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | '
    '<level>{level: <8}</level> | '
    '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - '
    '<level>{message}</level>'
)


class InterceptHandler(logging.Handler):
    """
    Перенаправляет записи stdlib logging (uvicorn, httpx, websockets) в loguru.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str | None = None, debug: bool | None = None) -> None:
    level = (level or settings.LOG_LEVEL).upper()
    debug = settings.DEBUG if debug is None else debug

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        backtrace=debug,
        diagnose=debug,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    # httpx на INFO пишет каждый запрос
    logging.getLogger('httpx').setLevel(logging.WARNING)
