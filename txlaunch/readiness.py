"""服务就绪检测：按固定间隔探测 TCP 端口，直到连通或超时。"""

from __future__ import annotations

import enum
import socket
import threading
import time
from typing import Callable, Optional

from .logging.structlog import get_logger, log_event

LOGGER = get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], None]
Connector = Callable[[str, int], bool]

DEFAULT_INTERVAL = 1.0


class ReadinessState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not ReadinessState.PENDING


def tcp_connect(host: str, port: int, timeout: float = 1.0) -> bool:
    """尝试建立一次 TCP 连接，成功即返回 True。"""

    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = DEFAULT_INTERVAL,
    *,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
    cancel: Optional[threading.Event] = None,
) -> ReadinessState:
    """有界轮询原语。

    每个间隔调用一次 predicate，首次为真返回 READY；自开始起经过
    timeout 秒仍未成功返回 TIMED_OUT；cancel 被设置时返回 CANCELLED。
    最长阻塞时间为 timeout 加一个间隔。
    """

    start = clock()
    while True:
        if cancel is not None and cancel.is_set():
            return ReadinessState.CANCELLED
        if predicate():
            return ReadinessState.READY
        elapsed = clock() - start
        if elapsed >= timeout:
            return ReadinessState.TIMED_OUT
        sleep(min(interval, timeout - elapsed))


class ReadinessGate:
    """只观察端口、不管理进程生命周期的就绪门。"""

    def __init__(
        self,
        *,
        interval: float = DEFAULT_INTERVAL,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
        connect: Connector = tcp_connect,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._connect = connect
        self.state = ReadinessState.PENDING

    def await_ready(
        self,
        host: str,
        port: int,
        timeout_seconds: float,
        cancel: Optional[threading.Event] = None,
    ) -> ReadinessState:
        """等待 (host, port) 可连接，返回终态。终态不会被再次改变。"""

        if self.state.terminal:
            return self.state

        LOGGER.info("Waiting for %s:%s to listen (timeout: %ss) ...", host, port, timeout_seconds)
        log_event("readiness_wait", host=host, port=port, timeout=timeout_seconds)
        start = self._clock()
        state = poll_until(
            lambda: self._connect(host, port),
            timeout_seconds,
            self.interval,
            clock=self._clock,
            sleep=self._sleep,
            cancel=cancel,
        )
        self.state = state
        waited = self._clock() - start
        log_event("readiness_" + state.value, host=host, port=port, waited=waited)
        if state is ReadinessState.READY:
            LOGGER.info("%s:%s is up after %.1fs", host, port, waited)
        else:
            LOGGER.warning("%s:%s not ready: %s after %.1fs", host, port, state.value, waited)
        return state


def await_ready(
    host: str,
    port: int,
    timeout_seconds: float,
    *,
    interval: float = DEFAULT_INTERVAL,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
    connect: Connector = tcp_connect,
    cancel: Optional[threading.Event] = None,
) -> ReadinessState:
    gate = ReadinessGate(interval=interval, clock=clock, sleep=sleep, connect=connect)
    return gate.await_ready(host, port, timeout_seconds, cancel=cancel)


__all__ = [
    "ReadinessState",
    "ReadinessGate",
    "await_ready",
    "poll_until",
    "tcp_connect",
]
