"""工作目录准备：外部命令检查与上游仓库的克隆/更新。"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..errors import ToolingUnavailableError, UpstreamCloneError
from ..logging.structlog import get_logger, log_event

LOGGER = get_logger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]
Which = Callable[[str], Optional[str]]


def require_tool(name: str, which: Which = shutil.which) -> str:
    """确认命令可用并返回其路径。"""

    path = which(name)
    if not path:
        raise ToolingUnavailableError(name)
    return path


def require_tools(names: Iterable[str], which: Which = shutil.which) -> None:
    for name in names:
        require_tool(name, which)


def ensure_checkout(repo_url: str, dest: Path, runner: CommandRunner = subprocess.run) -> Path:
    """克隆仓库，已存在时执行 git pull。

    克隆失败直接报错；已有副本时 pull 失败只记警告，继续使用旧副本。
    """

    if not dest.exists():
        dest.parent.mkdir(parents=True, exist_ok=True)
        log_event("checkout_clone", repo=repo_url, dest=str(dest))
        try:
            result = runner(  # noqa: S603
                ["git", "clone", repo_url, str(dest)],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise UpstreamCloneError(repo_url, dest, str(exc)) from exc
        if result.returncode != 0 or not dest.exists():
            raise UpstreamCloneError(repo_url, dest, (result.stderr or "").strip())
        LOGGER.info("Cloned %s into %s", repo_url, dest)
        return dest

    LOGGER.info("%s already exists; pulling latest", dest)
    try:
        result = runner(  # noqa: S603
            ["git", "pull"],
            cwd=str(dest),
            capture_output=True,
            text=True,
            check=False,
        )
        failed = result.returncode != 0
        detail = (result.stderr or "").strip()
    except OSError as exc:
        failed = True
        detail = str(exc)
    if failed:
        LOGGER.warning("git pull failed in %s; continuing with existing checkout", dest)
        log_event("checkout_stale", repo=repo_url, dest=str(dest), detail=detail)
    else:
        log_event("checkout_pulled", repo=repo_url, dest=str(dest))
    return dest


__all__ = ["require_tool", "require_tools", "ensure_checkout"]
