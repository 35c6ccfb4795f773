"""启动配置解析：结合探测到的硬件与用户覆盖值，得到完整且已校验的配置。"""

from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import LaunchDefaults, Overrides
from .errors import InvalidOverrideError, UnsatisfiableConfigError
from .logging.structlog import get_logger, log_event
from .system.gpu_probe import CapacitySummary, DeviceInventory, summarize

LOGGER = get_logger(__name__)

AUTO = "auto"
_INT_RE = re.compile(r"^[0-9]+$")

# (最小显存下界 MiB, micro batch)，从高到低匹配。仅为粗略的显存余量估计，不保证安全。
MICRO_BATCH_BANDS = (
    (180000, 16),
    (120000, 12),
    (80000, 8),
)
FALLBACK_MICRO_BATCH = 4


class LaunchConfig(BaseModel):
    """解析完成、不可变的服务启动配置。"""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    parallelism: int = Field(..., ge=1)
    micro_batch_size: int = Field(..., ge=1)
    port: int = Field(..., ge=1, le=65535)
    max_adapters: int = Field(..., ge=1)
    max_adapter_rank: int = Field(..., ge=1)
    model_id: str = Field(..., min_length=1)

    def to_server_args(self) -> List[str]:
        """序列化为 tx 服务的命令行参数。"""

        return [
            "--base-model",
            self.model_id,
            "--max-lora-adapters",
            str(self.max_adapters),
            "--max-lora-rank",
            str(self.max_adapter_rank),
            "--tensor-parallel-size",
            str(self.parallelism),
            "--train-micro-batch-size",
            str(self.micro_batch_size),
            "--port",
            str(self.port),
        ]


def micro_batch_for_memory(min_memory_mib: int) -> int:
    """根据最小显存选择 micro batch size，阈值为含下界。"""

    for threshold, batch in MICRO_BATCH_BANDS:
        if min_memory_mib >= threshold:
            return batch
    return FALLBACK_MICRO_BATCH


def _parse_positive(field: str, raw: Optional[str], allow_auto: bool = False) -> Optional[int]:
    """校验正整数覆盖值；未设置（或允许时为 auto）返回 None。"""

    if raw is None:
        return None
    value = str(raw)
    if value == "":
        return None
    if allow_auto and value == AUTO:
        return None
    if not _INT_RE.match(value) or int(value) < 1:
        raise InvalidOverrideError(field, value)
    return int(value)


def _parse_port(raw: Optional[str]) -> Optional[int]:
    if raw is None or str(raw) == "":
        return None
    value = str(raw)
    if not _INT_RE.match(value) or not 1 <= int(value) <= 65535:
        raise InvalidOverrideError("PORT", value, "必须在 1-65535 之间")
    return int(value)


def _parse_model(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    return value


def resolve(
    inventory: DeviceInventory,
    overrides: Optional[Overrides] = None,
    defaults: Optional[LaunchDefaults] = None,
) -> LaunchConfig:
    """解析启动配置。

    每个字段独立处理：用户显式提供的值经校验后原样使用，否则采用启发式默认值。
    TP 大小超过设备数时向下收敛并记录警告，而不是报错。
    """

    overrides = overrides or Overrides()
    defaults = defaults or LaunchDefaults()
    summary: CapacitySummary = summarize(inventory)
    if summary.device_count < 1:
        raise UnsatisfiableConfigError("未检测到任何 GPU，无法生成启动配置")

    model_id = _parse_model(overrides.model) or defaults.model_id
    port = _parse_port(overrides.port) or defaults.port
    max_adapters = _parse_positive("MAX_LORA_ADAPTERS", overrides.max_lora_adapters) or defaults.max_adapters
    max_rank = _parse_positive("MAX_LORA_RANK", overrides.max_lora_rank) or defaults.max_adapter_rank

    parallelism = _parse_positive("TP_SIZE", overrides.tp_size, allow_auto=True)
    if parallelism is None:
        parallelism = summary.device_count
    elif parallelism > summary.device_count:
        LOGGER.warning(
            "TP_SIZE=%s > GPU_COUNT=%s. Lowering TP_SIZE to GPU_COUNT.",
            parallelism,
            summary.device_count,
        )
        log_event(
            "corrective_clamp",
            field="TP_SIZE",
            requested=parallelism,
            effective=summary.device_count,
        )
        parallelism = summary.device_count

    micro_batch = _parse_positive("TRAIN_MICRO_BS", overrides.train_micro_bs, allow_auto=True)
    if micro_batch is None:
        micro_batch = micro_batch_for_memory(summary.min_memory_mib)

    try:
        config = LaunchConfig(
            parallelism=parallelism,
            micro_batch_size=micro_batch,
            port=port,
            max_adapters=max_adapters,
            max_adapter_rank=max_rank,
            model_id=model_id,
        )
    except ValidationError as exc:
        raise UnsatisfiableConfigError(f"启动配置校验失败: {exc}") from exc
    if config.parallelism > summary.device_count:
        raise UnsatisfiableConfigError(
            f"TP_SIZE={config.parallelism} 超过 GPU 数量 {summary.device_count}"
        )

    LOGGER.info(
        "Using config: model=%s port=%s TP_SIZE=%s TRAIN_MICRO_BS=%s",
        config.model_id,
        config.port,
        config.parallelism,
        config.micro_batch_size,
    )
    log_event("launch_config_resolved", config=config.model_dump())
    return config


__all__ = [
    "LaunchConfig",
    "MICRO_BATCH_BANDS",
    "micro_batch_for_memory",
    "resolve",
]
