"""运行模块导出。"""

from .launch import build_server_command, check_health, launch_server, run_rl_loop
from .supervisor import ProcessHandle, TmuxSession

__all__ = [
    "ProcessHandle",
    "TmuxSession",
    "build_server_command",
    "check_health",
    "launch_server",
    "run_rl_loop",
]
