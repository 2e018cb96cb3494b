import asyncio
from functools import lru_cache
from os import environ

from loguru import logger


def format_error(ex: BaseException) -> str:
    from traceback import TracebackException

    return "".join(TracebackException.from_exception(ex).format())


@lru_cache
def get_process_info():
    worker_name = environ.get("WORKER_NAME", "camrelay")

    parts = environ.get("BUILD_COMMIT", "").split("-")
    commit_id = parts[1] if len(parts) > 1 else "dev"

    return worker_name, commit_id


def init_logger():
    import logging
    import sys

    from camrelay.app_config import get_app_environ_config

    for name in ("aiortc", "aioice", "websockets", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.remove()

    worker_name, commit_id = get_process_info()

    if get_app_environ_config().DEBUG:
        logger_level = "DEBUG"
        logger_format = (
            f"<yellow>{worker_name}:{commit_id}</yellow> | "
            "<green>{time:MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )
    else:
        logger_level = "INFO"
        logger_format = (
            f"{worker_name}:{commit_id} | "
            "{time:MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{name}:{function}:{line} | "
            "{message}"
        )
    logger.add(sys.stderr, level=logger_level, format=logger_format)


def log_task_exception(task: asyncio.Task) -> None:
    """Done-callback for fire-and-forget tasks: surface crashes in the log."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Task {task.get_name()} crashed:\n{format_error(exc)}")
