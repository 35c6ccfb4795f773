"""事件日志：标准日志记录器与 JSONL 事件流。"""

from .structlog import (
    ROOT_LOGGER_NAME,
    event_log_path,
    get_logger,
    init_logging,
    log_event,
    log_exception,
    log_resource_snapshot,
)

__all__ = [
    "ROOT_LOGGER_NAME",
    "event_log_path",
    "get_logger",
    "init_logging",
    "log_event",
    "log_exception",
    "log_resource_snapshot",
]
