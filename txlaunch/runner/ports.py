"""启动前的端口占用检查。"""

from __future__ import annotations

import socket
from typing import Iterable, Optional

import psutil

from ..errors import PortInUseError
from ..logging.structlog import get_logger

LOGGER = get_logger(__name__)


def listening_ports(connections: Optional[Iterable[object]] = None) -> set[int]:
    """返回处于 LISTEN 状态的 TCP 端口集合。"""

    if connections is None:
        connections = psutil.net_connections(kind="tcp")
    ports: set[int] = set()
    for conn in connections:
        if getattr(conn, "status", None) != psutil.CONN_LISTEN:
            continue
        laddr = getattr(conn, "laddr", None)
        if laddr:
            ports.add(int(laddr.port))
    return ports


def _can_bind(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


def ensure_port_free(port: int, connections: Optional[Iterable[object]] = None) -> None:
    try:
        busy = port in listening_ports(connections)
    except psutil.AccessDenied:
        LOGGER.warning("无权限枚举连接，改用 bind 检测端口 %s", port)
        busy = not _can_bind(port)
    if busy:
        raise PortInUseError(port)


__all__ = ["listening_ports", "ensure_port_free"]
