from __future__ import annotations

import subprocess
from typing import Callable, Dict, List, Optional

import pytest

from txlaunch.logging import init_logging


class FakeGpuTool:
    name = "fake-smi"

    def __init__(
        self,
        count: str = "",
        listing: str = "",
        available: bool = True,
        count_error: Optional[Exception] = None,
        listing_error: Optional[Exception] = None,
    ) -> None:
        self.count = count
        self.listing = listing
        self.available = available
        self.count_error = count_error
        self.listing_error = listing_error

    def is_available(self) -> bool:
        return self.available

    def query_count(self) -> str:
        if self.count_error is not None:
            raise self.count_error
        return self.count

    def query_listing(self) -> str:
        if self.listing_error is not None:
            raise self.listing_error
        return self.listing


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingRunner:
    """subprocess.run 替身，按命令前缀返回预设的退出码。"""

    def __init__(self, returncodes: Optional[Dict[str, int]] = None, side_effect: Optional[Callable] = None) -> None:
        self.calls: List[dict] = []
        self.returncodes = returncodes or {}
        self.side_effect = side_effect

    def __call__(self, command, **kwargs):
        self.calls.append({"command": list(command), **kwargs})
        if self.side_effect is not None:
            self.side_effect(list(command), kwargs)
        key = " ".join(command[:2])
        code = self.returncodes.get(key, 0)
        return subprocess.CompletedProcess(command, code, stdout="", stderr="boom" if code else "")

    @property
    def commands(self) -> List[List[str]]:
        return [call["command"] for call in self.calls]


def gpu_lines(count: int) -> str:
    return "\n".join(f"GPU {i}: NVIDIA H100 80GB HBM3 (UUID: GPU-{i:04d})" for i in range(count)) + "\n"


@pytest.fixture(autouse=True)
def _reset_event_log():
    init_logging(None)
    yield
    init_logging(None)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
