"""系统资源探测模块。"""

from .gpu_probe import (
    CapacitySummary,
    Device,
    DeviceInventory,
    GpuQueryTool,
    NvidiaSmiTool,
    parse_device_listing,
    probe,
    summarize,
)

__all__ = [
    "CapacitySummary",
    "Device",
    "DeviceInventory",
    "GpuQueryTool",
    "NvidiaSmiTool",
    "parse_device_listing",
    "probe",
    "summarize",
]
