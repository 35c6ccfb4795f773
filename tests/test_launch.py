from __future__ import annotations

import logging
import threading
from collections import namedtuple
from pathlib import Path

import httpx
import psutil
import pytest

from conftest import RecordingRunner
from txlaunch.config import load_config
from txlaunch.errors import CommandFailedError, PortInUseError, ReadinessCancelledError, ReadinessTimeoutError
from txlaunch.readiness import ReadinessGate, ReadinessState
from txlaunch.resolver import resolve
from txlaunch.runner import launch as launch_module
from txlaunch.runner.launch import (
    build_rl_loop_command,
    build_server_command,
    check_health,
    child_env,
    launch_server,
    run_rl_loop,
)
from txlaunch.runner.ports import ensure_port_free, listening_ports
from txlaunch.runner.supervisor import ProcessHandle
from txlaunch.system.gpu_probe import Device, DeviceInventory

Addr = namedtuple("Addr", "ip port")
Conn = namedtuple("Conn", "laddr status")


class FakeHandle(ProcessHandle):
    name = "fake-session"

    def __init__(self) -> None:
        self.started = []
        self.running = False

    def start(self, command, *, cwd, log_path, env=None):
        self.started.append({"command": list(command), "cwd": cwd, "log_path": log_path, "env": env})
        self.running = True

    def is_running(self):
        return self.running

    def stop(self):
        self.running = False

    def tail_log(self, lines=200):
        return ["[tx] launching..."]


@pytest.fixture
def config(tmp_path):
    return load_config(
        tmp_path / "none.yaml",
        environ={"WORKDIR": str(tmp_path), "HF_TOKEN": "hf", "READY_TIMEOUT": "5"},
    )


@pytest.fixture
def launch():
    inventory = DeviceInventory.from_devices([Device("H100", 81559)] * 2)
    return resolve(inventory)


def test_server_command(config, launch):
    command = build_server_command(config, launch)
    assert command[:8] == ["uv", "run", "--extra", "gpu", "--extra", "tinker", "-m", "tx.tinker.api"]
    assert command[8:] == launch.to_server_args()


def test_child_env_drops_empty_secrets(config):
    assert child_env(config) == {"HF_TOKEN": "hf", "TINKER_API_KEY": "dummy"}


def test_launch_server_ready(config, launch, fake_clock):
    handle = FakeHandle()
    checked = []
    gate = ReadinessGate(clock=fake_clock, sleep=fake_clock.sleep, connect=lambda h, p: fake_clock() >= 2)
    result = launch_server(config, launch, handle=handle, gate=gate, port_check=checked.append)

    assert result is handle
    assert checked == [8000]
    started = handle.started[0]
    assert started["cwd"] == Path(config.workspace.workdir) / "SkyRL" / "skyrl-tx"
    assert started["log_path"] == config.server_log_path
    assert started["env"]["HF_TOKEN"] == "hf"


def test_launch_server_timeout_names_log(config, launch, fake_clock):
    gate = ReadinessGate(clock=fake_clock, sleep=fake_clock.sleep, connect=lambda h, p: False)
    with pytest.raises(ReadinessTimeoutError) as info:
        launch_server(config, launch, handle=FakeHandle(), gate=gate, port_check=lambda port: None)
    assert info.value.log_path == config.server_log_path
    assert str(config.server_log_path) in str(info.value)
    assert "fake-session" in str(info.value)
    assert fake_clock.now == pytest.approx(5)


def test_launch_server_cancelled_is_not_a_timeout(config, launch, fake_clock):
    cancel = threading.Event()
    cancel.set()
    gate = ReadinessGate(clock=fake_clock, sleep=fake_clock.sleep, connect=lambda h, p: False)
    with pytest.raises(ReadinessCancelledError) as info:
        launch_server(config, launch, handle=FakeHandle(), gate=gate, port_check=lambda port: None, cancel=cancel)
    assert not isinstance(info.value, ReadinessTimeoutError)
    assert "fake-session" in str(info.value)
    assert fake_clock.now == 0


def test_launch_server_default_gate_polls_every_second(config, launch, monkeypatch):
    built = []

    class RecordingGate(ReadinessGate):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            built.append(self)

        def await_ready(self, host, port, timeout_seconds, cancel=None):
            return ReadinessState.READY

    monkeypatch.setattr(launch_module, "ReadinessGate", RecordingGate)
    launch_server(config, launch, handle=FakeHandle(), port_check=lambda port: None)
    assert built[0].interval == 1


def test_launch_server_port_in_use(config, launch):
    handle = FakeHandle()

    def busy(port):
        raise PortInUseError(port)

    with pytest.raises(PortInUseError):
        launch_server(config, launch, handle=handle, port_check=busy)
    assert handle.started == []


def test_listening_ports_filters_listen_state():
    connections = [
        Conn(Addr("0.0.0.0", 8000), psutil.CONN_LISTEN),
        Conn(Addr("127.0.0.1", 9000), psutil.CONN_ESTABLISHED),
        Conn((), psutil.CONN_LISTEN),
    ]
    assert listening_ports(connections) == {8000}
    with pytest.raises(PortInUseError) as info:
        ensure_port_free(8000, connections)
    assert info.value.port == 8000
    ensure_port_free(9000, connections)


def test_check_health_success_and_failure():
    def handler(request):
        assert request.url.path == "/health"
        return httpx.Response(200, json={"status": "ok"})

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        assert check_health("127.0.0.1", 8000, client=client)

    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    with httpx.Client(transport=httpx.MockTransport(refuse)) as client:
        assert not check_health("127.0.0.1", 8000, client=client)

    with httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
        assert not check_health("127.0.0.1", 8000, client=client)


def test_rl_loop_command(config, launch):
    command = build_rl_loop_command(config, launch)
    assert command[:7] == ["uv", "run", "--with", "wandb", "--with", "tinker", "rl_loop.py"]
    assert command[7:] == [
        "base_url=http://localhost:8000",
        "model_name=Qwen/Qwen3-4B",
        "lora_rank=1",
        "max_length=1024",
        "save_every=100",
    ]


def test_run_rl_loop(config, launch, caplog):
    config.workspace.cookbook_path.mkdir(parents=True)
    runner = RecordingRunner()
    with caplog.at_level(logging.WARNING):
        run_rl_loop(config, launch, runner=runner, base_env={"PATH": "/usr/bin"})
    assert runner.commands[0] == ["git", "pull"]
    rl_call = runner.calls[1]
    assert rl_call["cwd"] == str(config.workspace.cookbook_path / "recipes")
    assert rl_call["env"]["PATH"] == "/usr/bin"
    assert rl_call["env"]["TINKER_API_KEY"] == "dummy"
    assert any("WANDB_API_KEY is empty" in r.getMessage() for r in caplog.records)


def test_run_rl_loop_failure(config, launch):
    config.workspace.cookbook_path.mkdir(parents=True)
    runner = RecordingRunner(returncodes={"uv run": 2})
    with pytest.raises(CommandFailedError) as info:
        run_rl_loop(config, launch, runner=runner, base_env={})
    assert info.value.returncode == 2
