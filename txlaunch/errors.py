"""启动流程中使用的异常类型。"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class LauncherError(Exception):
    """所有致命错误的基类，CLI 捕获后以退出码 1 结束。"""


class ToolingUnavailableError(LauncherError):
    """缺少必需的外部命令。"""

    def __init__(self, tool: str, message: Optional[str] = None) -> None:
        self.tool = tool
        super().__init__(message or f"缺少必需命令: {tool}")


class NoAcceleratorToolingError(ToolingUnavailableError):
    """找不到 GPU 查询工具（nvidia-smi）。"""

    def __init__(self, tool: str = "nvidia-smi") -> None:
        super().__init__(tool, f"未找到 {tool}，当前脚本需要 NVIDIA GPU 机器")


class ProbeFailureError(LauncherError):
    """GPU 查询没有返回可用结果。"""


class NoDevicesFoundError(ProbeFailureError):
    """查询工具报告 0 块 GPU。"""


class InvalidOverrideError(LauncherError):
    """用户提供的覆盖值无法通过校验。"""

    def __init__(self, field: str, value: object, reason: str = "必须为正整数") -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}={value}. {reason}")


class ConfigError(LauncherError):
    """配置文件无法读取或结构不合法。"""


class UnsatisfiableConfigError(LauncherError):
    """无法得到满足全部约束的启动配置。"""


class PortInUseError(LauncherError):
    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"端口 {port} 已被占用，请设置 PORT=xxxx 后重试")


class ReadinessTimeoutError(LauncherError):
    """服务在超时时间内未开始监听端口。"""

    def __init__(
        self,
        host: str,
        port: int,
        timeout: float,
        log_path: Optional[Path] = None,
        session: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.log_path = log_path
        self.session = session
        message = f"服务未能在 {timeout:g}s 内监听 {host}:{port}"
        if log_path is not None:
            message += f"；查看日志: tail -n 200 {log_path}"
        if session:
            message += f"；或进入会话: tmux attach -t {session}"
        super().__init__(message)


class ReadinessCancelledError(LauncherError):
    """就绪等待被取消，服务进程仍留在会话中。"""

    def __init__(self, host: str, port: int, session: Optional[str] = None) -> None:
        self.host = host
        self.port = port
        self.session = session
        message = f"等待 {host}:{port} 就绪的过程已被取消"
        if session:
            message += f"；服务仍在会话中: tmux attach -t {session}"
        super().__init__(message)


class UpstreamCloneError(LauncherError):
    """上游仓库克隆失败且本地不存在可用副本。"""

    def __init__(self, repo: str, dest: Path, detail: str = "") -> None:
        self.repo = repo
        self.dest = dest
        message = f"克隆 {repo} 到 {dest} 失败"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CommandFailedError(LauncherError):
    def __init__(self, command: Sequence[str], returncode: int) -> None:
        self.command = list(command)
        self.returncode = returncode
        super().__init__(f"命令执行失败 (exit={returncode}): {' '.join(self.command)}")


__all__ = [
    "LauncherError",
    "ToolingUnavailableError",
    "NoAcceleratorToolingError",
    "ProbeFailureError",
    "NoDevicesFoundError",
    "ConfigError",
    "InvalidOverrideError",
    "UnsatisfiableConfigError",
    "PortInUseError",
    "ReadinessTimeoutError",
    "ReadinessCancelledError",
    "UpstreamCloneError",
    "CommandFailedError",
]
