"""tx 服务启动、就绪等待、健康检查与可选的 RL loop。"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

import httpx

from ..config import LauncherConfig
from ..errors import CommandFailedError, ReadinessCancelledError, ReadinessTimeoutError
from ..logging.structlog import get_logger, log_event, log_exception
from ..readiness import ReadinessGate, ReadinessState
from ..resolver import LaunchConfig
from .ports import ensure_port_free
from .supervisor import ProcessHandle, TmuxSession
from .workspace import ensure_checkout

LOGGER = get_logger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]
PortCheck = Callable[[int], None]


def build_server_command(config: LauncherConfig, launch: LaunchConfig) -> List[str]:
    """拼出在 skyrl-tx 目录下执行的 uv 启动命令。"""

    command = ["uv", "run"]
    for extra in config.server.extras:
        command.extend(["--extra", extra])
    command.extend(["-m", config.server.module])
    command.extend(launch.to_server_args())
    return command


def child_env(config: LauncherConfig) -> Dict[str, str]:
    """传递给子进程的凭据，空值不会下发。"""

    return {key: value for key, value in config.secrets.as_env().items() if value}


def launch_server(
    config: LauncherConfig,
    launch: LaunchConfig,
    handle: Optional[ProcessHandle] = None,
    gate: Optional[ReadinessGate] = None,
    port_check: PortCheck = ensure_port_free,
    cancel: Optional[threading.Event] = None,
) -> ProcessHandle:
    """启动服务并等待端口可连接。

    超时抛出 ReadinessTimeoutError，cancel 被设置时抛出 ReadinessCancelledError。
    """

    port_check(launch.port)
    LOGGER.info("Port %s is free", launch.port)

    handle = handle or TmuxSession(config.server.session_name)
    gate = gate or ReadinessGate()
    log_path = config.server_log_path
    command = build_server_command(config, launch)
    LOGGER.info("Starting server: %s", shlex.join(command))
    handle.start(command, cwd=config.workspace.server_path, log_path=log_path, env=child_env(config))

    host = config.server.host
    timeout = config.readiness.timeout_seconds
    state = gate.await_ready(host, launch.port, timeout, cancel=cancel)
    if state is not ReadinessState.READY:
        tail = handle.tail_log(20)
        log_event("server_not_ready", level=logging.WARNING, state=state.value, log_path=log_path, tail=tail)
        if state is ReadinessState.CANCELLED:
            raise ReadinessCancelledError(host, launch.port, session=handle.name)
        raise ReadinessTimeoutError(host, launch.port, timeout, log_path=log_path, session=handle.name)
    return handle


def check_health(
    host: str,
    port: int,
    path: str = "/health",
    timeout: float = 5.0,
    client: Optional[httpx.Client] = None,
) -> bool:
    """请求健康检查接口，2xx 视为健康；失败只记录，不抛出。"""

    url = f"http://{host}:{port}{path}"
    start = time.time()
    try:
        if client is not None:
            response = client.get(url, timeout=timeout)
        else:
            response = httpx.get(url, timeout=timeout)
        healthy = response.is_success
        log_event(
            "health_check",
            url=url,
            status=response.status_code,
            healthy=healthy,
            elapsed_ms=int((time.time() - start) * 1000),
        )
        return healthy
    except httpx.HTTPError as exc:
        log_exception("health_check_fail", exc, url=url)
        LOGGER.warning("Health check %s failed: %s", url, exc)
        return False


def build_rl_loop_command(config: LauncherConfig, launch: LaunchConfig) -> List[str]:
    rl = config.rl_loop
    return [
        "uv",
        "run",
        "--with",
        "wandb",
        "--with",
        "tinker",
        rl.script,
        f"base_url=http://localhost:{launch.port}",
        f"model_name={launch.model_id}",
        f"lora_rank={launch.max_adapter_rank}",
        f"max_length={rl.max_length}",
        f"save_every={rl.save_every}",
    ]


def run_rl_loop(
    config: LauncherConfig,
    launch: LaunchConfig,
    runner: CommandRunner = subprocess.run,
    base_env: Optional[Dict[str, str]] = None,
) -> None:
    """拉取 tinker-cookbook 并对本地服务运行 RL loop。"""

    cookbook = ensure_checkout(config.workspace.cookbook_repo, config.workspace.cookbook_path, runner)
    if not config.secrets.wandb_api_key:
        LOGGER.warning("WANDB_API_KEY is empty. The RL loop may fail if wandb is required.")

    command = build_rl_loop_command(config, launch)
    env = dict(os.environ if base_env is None else base_env)
    env.update(child_env(config))
    LOGGER.info("Starting RL loop against base_url=http://localhost:%s", launch.port)
    log_event("rl_loop_start", command=shlex.join(command), cwd=str(cookbook / "recipes"))
    start = time.time()
    result = runner(command, cwd=str(cookbook / "recipes"), env=env, check=False)  # noqa: S603
    elapsed_ms = int((time.time() - start) * 1000)
    if result.returncode != 0:
        log_event("rl_loop_fail", level=logging.ERROR, code=result.returncode, elapsed_ms=elapsed_ms)
        raise CommandFailedError(command, result.returncode)
    log_event("rl_loop_success", elapsed_ms=elapsed_ms)


def operator_hints(config: LauncherConfig) -> Iterable[str]:
    yield f"Attach to server session: tmux attach -t {config.server.session_name}"
    yield f"Follow logs: tail -f {config.server_log_path}"


__all__ = [
    "build_server_command",
    "build_rl_loop_command",
    "check_health",
    "child_env",
    "launch_server",
    "operator_hints",
    "run_rl_loop",
]
