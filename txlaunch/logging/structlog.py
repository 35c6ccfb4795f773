"""JSONL 事件流。

每次启动的关键节点（GPU 探测、配置决议、就绪等待等）都会写成一行 JSON，
方便事后用 jq 之类的工具回放。未配置事件文件时，事件以 JSON 文本形式
交给 ``txlaunch`` 标准日志记录器，级别与事件本身的级别一致。
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
import traceback
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union

if TYPE_CHECKING:
    from ..resolver import LaunchConfig
    from ..system.gpu_probe import CapacitySummary

ROOT_LOGGER_NAME = "txlaunch"
_CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class _EventSink:
    def __init__(self) -> None:
        self.path: Optional[Path] = None
        self.context: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def configure(self, path: Optional[Path], context: Mapping[str, Any]) -> None:
        with self._lock:
            self.path = path
            self.context = dict(context)

    def emit(self, record: Dict[str, Any], level: int) -> None:
        line = json.dumps(record, ensure_ascii=False, default=_encode)
        with self._lock:
            path = self.path
            if path is not None:
                with path.open("a", encoding="utf-8") as fp:
                    fp.write(line + "\n")
                return
        _root_logger().log(level, line)


_SINK = _EventSink()


def _root_logger() -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


def _encode(value: Any) -> Any:
    # 集合排序后输出，保证同样的输入得到同样的行
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)


def init_logging(jsonl_path: Union[str, Path, None], **context: Any) -> None:
    """设置事件文件位置与每条事件都携带的上下文字段。

    传入空值时事件回退到标准日志；父目录不存在会自动创建。
    """

    path: Optional[Path] = None
    if jsonl_path:
        path = Path(jsonl_path)
        path.parent.mkdir(parents=True, exist_ok=True)
    _SINK.configure(path, context)


def event_log_path() -> Optional[Path]:
    return _SINK.path


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """写出一条事件。fields 中的同名键会覆盖上下文字段。"""

    record: Dict[str, Any] = {"event": event, "ts": time.time()}
    if level != logging.INFO:
        record["level"] = logging.getLevelName(level).lower()
    record.update(_SINK.context)
    record.update(fields)
    _SINK.emit(record, level)


def log_exception(event: str, err: BaseException, **fields: Any) -> None:
    """以 error 级别写出异常类型、消息与完整堆栈。"""

    trace = "".join(traceback.format_exception(type(err), err, err.__traceback__))
    log_event(
        event,
        level=logging.ERROR,
        error=str(err),
        error_type=type(err).__name__,
        traceback=trace,
        **fields,
    )


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """返回 txlaunch 命名空间下的记录器，输出统一经由根记录器的 handler。"""

    _root_logger()
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_resource_snapshot(
    logger: logging.Logger,
    summary: "CapacitySummary",
    config: "LaunchConfig",
) -> None:
    """打印一行资源摘要，并把 GPU 概况与最终决议一并写入事件流。"""

    logger.info(
        "GPUs=%s (%s), min VRAM=%sMiB -> TP=%s, micro_bs=%s",
        summary.device_count,
        ";".join(sorted(summary.distinct_names)) or "unknown",
        summary.min_memory_mib,
        config.parallelism,
        config.micro_batch_size,
    )
    log_event(
        "resource_snapshot",
        gpus=summary,
        model=config.model_id,
        port=config.port,
        parallelism=config.parallelism,
        micro_batch_size=config.micro_batch_size,
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
