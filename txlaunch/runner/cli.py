"""命令行入口：探测 GPU、解析配置、启动 SkyRL tx 服务并等待就绪。"""

from __future__ import annotations

import argparse
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError
from rich.console import Console

from ..config import DEFAULT_CONFIG_PATH, LauncherConfig, load_config
from ..errors import LauncherError
from ..logging import get_logger, init_logging, log_exception, log_resource_snapshot
from ..resolver import LaunchConfig, resolve
from ..system import NvidiaSmiTool, probe, summarize
from .launch import build_server_command, check_health, launch_server, operator_hints, run_rl_loop
from .workspace import ensure_checkout, require_tools

console = Console()
LOGGER = get_logger(__name__)


def step(message: str) -> None:
    console.log(f"[bold magenta]==>[/bold magenta] {message}")


def info(message: str) -> None:
    console.log(f"[bold blue]\\[INFO][/bold blue] {message}")


def ok(message: str) -> None:
    console.log(f"[bold green]\\[OK][/bold green]   {message}")


def warn(message: str) -> None:
    console.log(f"[bold yellow]\\[WARN][/bold yellow] {message}")


def err(message: str) -> None:
    console.log(f"[bold red]\\[ERR][/bold red]  {message}")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """解析命令行参数。"""

    parser = argparse.ArgumentParser(description="在 GPU 主机上启动 SkyRL tx 服务")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="YAML 配置路径")
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help=".env 文件路径")
    parser.add_argument("--workdir", type=Path, default=None, help="覆盖工作目录")
    parser.add_argument("--timeout", type=float, default=None, help="就绪等待超时（秒）")
    parser.add_argument(
        "--rl-loop",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="服务就绪后是否运行 tinker-cookbook RL loop",
    )
    parser.add_argument("--dry-run", action="store_true", help="只探测与解析配置，打印启动命令")
    return parser.parse_args(argv)


def _apply_cli_overrides(config: LauncherConfig, args: argparse.Namespace) -> None:
    if args.workdir is not None:
        config.model.workspace.workdir = args.workdir
    if args.timeout is not None:
        if args.timeout <= 0:
            raise LauncherError(f"--timeout 必须大于 0: {args.timeout}")
        config.model.readiness.timeout_seconds = args.timeout
    if args.rl_loop is not None:
        config.model.rl_loop.enabled = args.rl_loop


def detect_and_resolve(config: LauncherConfig, tool: Optional[NvidiaSmiTool] = None) -> LaunchConfig:
    """探测 GPU 并解析启动配置。"""

    inventory = probe(tool)
    summary = summarize(inventory)
    launch = resolve(inventory, config.overrides, config.defaults)
    log_resource_snapshot(LOGGER, summary, launch)
    ok(
        f"Using config: model={launch.model_id} port={launch.port} "
        f"TP_SIZE={launch.parallelism} TRAIN_MICRO_BS={launch.micro_batch_size}"
    )
    return launch


def _print_gpu_snapshot(tool: NvidiaSmiTool) -> None:
    info("nvidia-smi snapshot:")
    try:
        console.print(tool.snapshot(), markup=False, highlight=False)
    except (OSError, subprocess.SubprocessError) as exc:
        warn(f"nvidia-smi snapshot failed: {exc}")


def run(config: LauncherConfig, dry_run: bool = False) -> int:
    """按顺序执行完整启动流程。"""

    workspace = config.workspace
    console.rule("SkyRL tx Setup")
    console.log(f"[dim]workdir={workspace.workdir} model={config.overrides.model or config.defaults.model_id}[/dim]")

    step("Preparing workspace")
    workspace.workdir.mkdir(parents=True, exist_ok=True)
    init_logging(config.events_path, session=config.server.session_name)

    step("Detecting GPUs and choosing defaults")
    tool = NvidiaSmiTool()
    launch = detect_and_resolve(config, tool)
    _print_gpu_snapshot(tool)

    if dry_run:
        info("Dry run, server command:")
        console.print(" ".join(build_server_command(config, launch)), markup=False)
        return 0

    require_tools(["git", "uv", "tmux"])

    step("Fetching SkyRL repo")
    ensure_checkout(workspace.skyrl_repo, workspace.skyrl_path)

    step(f"Starting SkyRL tx in tmux session: {config.server.session_name}")
    launch_server(config, launch)
    ok(f"SkyRL tx is up (port {launch.port})")

    readiness = config.readiness
    if check_health(config.server.host, launch.port, readiness.health_path, readiness.health_timeout_seconds):
        ok(f"GET {readiness.health_path} returned success")
    else:
        warn(f"GET {readiness.health_path} did not succeed yet; the server may still be loading")
    for hint in operator_hints(config):
        info(hint)

    if config.rl_loop.enabled:
        step("Running RL loop (tinker-cookbook)")
        run_rl_loop(config, launch)
        ok("RL loop completed")

    ok("Setup complete")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """程序入口。"""

    args = parse_args(argv)
    try:
        config = load_config(args.config, args.env_file)
        _apply_cli_overrides(config, args)
        return run(config, dry_run=args.dry_run)
    except LauncherError as exc:
        err(str(exc))
        log_exception("launcher_fail", exc)
        return 1
    except ValidationError as exc:
        err(f"配置校验失败: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
