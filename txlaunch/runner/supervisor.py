"""后台进程托管：抽象接口与基于 tmux 的实现。"""

from __future__ import annotations

import os
import shlex
import subprocess
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import CommandFailedError
from ..logging.structlog import get_logger, log_event

LOGGER = get_logger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


class ProcessHandle:
    """长驻子进程句柄接口。"""

    name: str = "base"

    def start(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        log_path: Path,
        env: Optional[Dict[str, str]] = None,
    ) -> None:  # pragma: no cover - 接口
        raise NotImplementedError

    def is_running(self) -> bool:  # pragma: no cover - 接口
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - 接口
        raise NotImplementedError

    def tail_log(self, lines: int = 200) -> List[str]:  # pragma: no cover - 接口
        raise NotImplementedError


def read_tail(path: Path, lines: int = 200) -> List[str]:
    """读取文件末尾若干行，文件不存在时返回空列表。"""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as fp:
        return [line.rstrip("\n") for line in deque(fp, maxlen=lines)]


class TmuxSession(ProcessHandle):
    """在独立 tmux 会话中运行命令，输出重定向到日志文件。"""

    def __init__(self, name: str, runner: CommandRunner = subprocess.run, tmux: str = "tmux") -> None:
        self.name = name
        self.tmux = tmux
        self._runner = runner
        self._log_path: Optional[Path] = None

    def _tmux(self, *args: str) -> "subprocess.CompletedProcess[str]":
        return self._runner(  # noqa: S603
            [self.tmux, *args],
            capture_output=True,
            text=True,
            check=False,
        )

    def is_running(self) -> bool:
        return self._tmux("has-session", "-t", self.name).returncode == 0

    def stop(self) -> None:
        if self.is_running():
            self._tmux("kill-session", "-t", self.name)
            log_event("session_stopped", session=self.name)

    def env_file_path(self, log_path: Path) -> Path:
        return log_path.parent / f".{self.name}.env"

    def write_env_file(self, path: Path, env: Dict[str, str]) -> Path:
        """以 0600 权限写入 export 语句，避免凭据出现在进程命令行中。"""

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            for key, value in env.items():
                fp.write(f"export {key}={shlex.quote(value)}\n")
        os.chmod(path, 0o600)
        return path

    def build_script(
        self,
        command: Sequence[str],
        cwd: Path,
        log_path: Path,
        env_file: Optional[Path] = None,
    ) -> str:
        """生成在会话内执行的 bash 脚本。"""

        lines = ["set -euo pipefail"]
        if env_file is not None:
            quoted = shlex.quote(str(env_file))
            lines.extend([f"source {quoted}", f"rm -f {quoted}"])
        lines.extend(
            [
                f"cd {shlex.quote(str(cwd))}",
                "echo '[tx] launching...'",
                f"{shlex.join(list(command))} > {shlex.quote(str(log_path))} 2>&1",
            ]
        )
        return "\n".join(lines)

    def start(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        log_path: Path,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        if self.is_running():
            LOGGER.warning("Killing existing tmux session: %s", self.name)
            self.stop()

        log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_path = log_path
        env_file = self.write_env_file(self.env_file_path(log_path), env) if env else None
        args = ["new-session", "-d", "-s", self.name]
        args.extend(["bash", "-lc", self.build_script(command, cwd, log_path, env_file)])
        result = self._tmux(*args)
        if result.returncode != 0:
            if env_file is not None:
                env_file.unlink(missing_ok=True)
            raise CommandFailedError([self.tmux, *args[:4]], result.returncode)
        log_event(
            "server_launch",
            session=self.name,
            command=shlex.join(list(command)),
            cwd=str(cwd),
            log_path=str(log_path),
        )

    def tail_log(self, lines: int = 200) -> List[str]:
        if self._log_path is None:
            return []
        return read_tail(self._log_path, lines)


__all__ = ["ProcessHandle", "TmuxSession", "read_tail"]
