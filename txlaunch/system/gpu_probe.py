"""GPU 资源探测工具：统计设备数量、型号与显存。"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Protocol, Sequence, Tuple

from ..errors import NoAcceleratorToolingError, NoDevicesFoundError, ProbeFailureError
from ..logging.structlog import get_logger, log_event

LOGGER = get_logger(__name__)

_INT_RE = re.compile(r"^[0-9]+$")
_GPU_LINE_RE = re.compile(r"^GPU \d+:")
_NO_DEVICES_TEXT = "no devices were found"
# nvidia-smi 退出码 6: 查询的对象不存在
_NO_DEVICES_EXIT = 6

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


@dataclass(frozen=True)
class Device:
    """单块 GPU 的名称与显存（MiB），显存无法解析时为 None。"""

    name: str
    memory_mib: Optional[int]


@dataclass(frozen=True)
class DeviceInventory:
    """设备清单。device_count 来自计数查询，devices 来自明细查询。"""

    device_count: int
    devices: Tuple[Device, ...] = ()

    @classmethod
    def from_devices(cls, devices: Sequence[Device]) -> "DeviceInventory":
        return cls(device_count=len(devices), devices=tuple(devices))


@dataclass(frozen=True)
class CapacitySummary:
    """对设备清单的保守归约结果。"""

    device_count: int
    min_memory_mib: int
    distinct_names: FrozenSet[str]


class GpuQueryTool(Protocol):
    """硬件查询工具协议，任何满足该协议的实现均可替换 nvidia-smi。"""

    name: str

    def is_available(self) -> bool:
        ...

    def query_count(self) -> str:
        """返回每块设备一行的文本。"""

    def query_listing(self) -> str:
        """返回 `name, memory` 形式的逗号分隔明细。"""


class NvidiaSmiTool:
    """基于 nvidia-smi 的查询实现。"""

    name = "nvidia-smi"

    def __init__(self, executable: str = "nvidia-smi", runner: CommandRunner = subprocess.run) -> None:
        self.executable = executable
        self._runner = runner

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def _run(self, *args: str) -> str:
        result = self._runner(  # noqa: S603
            [self.executable, *args],
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout or ""

    def query_count(self) -> str:
        return self._run("-L")

    def query_listing(self) -> str:
        return self._run("--query-gpu=name,memory.total", "--format=csv,noheader,nounits")

    def snapshot(self) -> str:
        """返回 nvidia-smi 默认输出，用于人工查看。"""

        return self._run()


def _parse_memory(raw: str) -> Optional[int]:
    value = raw.strip()
    if value.upper().endswith("MIB"):
        value = value[:-3].strip()
    if not _INT_RE.match(value):
        return None
    return int(value)


def parse_device_count(output: str) -> int:
    """统计 `GPU N:` 开头的行数。

    MIG 子设备行（缩进的 `MIG ... Device N:`）与 "No devices were found"
    等提示文本不计入。
    """

    return sum(1 for line in output.splitlines() if _GPU_LINE_RE.match(line))


def _reports_no_devices(exc: BaseException) -> bool:
    if not isinstance(exc, subprocess.CalledProcessError):
        return False
    if exc.returncode == _NO_DEVICES_EXIT:
        return True
    text = " ".join(str(part or "") for part in (exc.stdout, exc.stderr)).lower()
    return _NO_DEVICES_TEXT in text


def parse_device_listing(output: str) -> Dict[int, Device]:
    """解析明细查询输出，返回 行号 -> Device 的映射。

    空行直接跳过；显存列缺失或无法解析的行保留名称，显存记为 None，
    并记录警告，不会中断整个探测。
    """

    devices: Dict[int, Device] = {}
    for index, line in enumerate(output.splitlines()):
        if not line.strip():
            continue
        parts = [part.strip() for part in line.split(",")]
        name = parts[0]
        memory = _parse_memory(parts[1]) if len(parts) >= 2 else None
        if memory is None:
            LOGGER.warning("无法解析第 %s 行的显存字段，已跳过: %r", index, line)
            log_event("gpu_listing_row_skipped", level=logging.WARNING, row=index, line=line)
        devices[index] = Device(name=name, memory_mib=memory)
    return devices


def summarize(inventory: DeviceInventory) -> CapacitySummary:
    """取最小显存作为保守下界，名称去重；没有可用显存值时下界为 0。"""

    memories = [device.memory_mib for device in inventory.devices if device.memory_mib is not None]
    names = frozenset(device.name for device in inventory.devices if device.name)
    return CapacitySummary(
        device_count=inventory.device_count,
        min_memory_mib=min(memories) if memories else 0,
        distinct_names=names,
    )


def probe(tool: Optional[GpuQueryTool] = None) -> DeviceInventory:
    """探测当前主机的 GPU 清单。"""

    tool = tool or NvidiaSmiTool()
    if not tool.is_available():
        raise NoAcceleratorToolingError(tool.name)

    try:
        count_output = tool.query_count()
    except (OSError, subprocess.SubprocessError) as exc:
        if _reports_no_devices(exc):
            raise NoDevicesFoundError(f"{tool.name} 未检测到任何 GPU") from exc
        raise ProbeFailureError(f"{tool.name} 设备计数查询失败: {exc}") from exc

    device_count = parse_device_count(count_output)
    if device_count < 1:
        raise NoDevicesFoundError(f"{tool.name} 未检测到任何 GPU")

    try:
        listing_output = tool.query_listing()
    except (OSError, subprocess.SubprocessError) as exc:
        LOGGER.warning("%s 明细查询失败，按无显存信息处理: %s", tool.name, exc)
        listing_output = ""

    rows = parse_device_listing(listing_output)
    devices = tuple(rows[index] for index in sorted(rows))
    inventory = DeviceInventory(device_count=device_count, devices=devices)
    summary = summarize(inventory)

    LOGGER.info("Detected GPUs: count=%s", summary.device_count)
    LOGGER.info("GPU models: %s", ";".join(sorted(summary.distinct_names)) or "unknown")
    if summary.min_memory_mib > 0:
        LOGGER.info("Min GPU VRAM: %s MiB (conservative)", summary.min_memory_mib)
    log_event(
        "gpu_probe",
        tool=tool.name,
        device_count=device_count,
        listed=len(devices),
        min_memory_mib=summary.min_memory_mib,
        gpu_names=summary.distinct_names,
    )
    return inventory


__all__ = [
    "Device",
    "DeviceInventory",
    "CapacitySummary",
    "GpuQueryTool",
    "NvidiaSmiTool",
    "parse_device_count",
    "parse_device_listing",
    "summarize",
    "probe",
]
