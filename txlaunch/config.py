"""配置加载模块，负责读取 YAML 与环境变量并生成统一的运行配置对象。"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")

# 用户可直接覆盖、由 resolver 负责校验的字段（环境变量名 -> Overrides 属性）
OVERRIDE_FIELDS: Dict[str, str] = {
    "MODEL": "model",
    "PORT": "port",
    "TP_SIZE": "tp_size",
    "TRAIN_MICRO_BS": "train_micro_bs",
    "MAX_LORA_ADAPTERS": "max_lora_adapters",
    "MAX_LORA_RANK": "max_lora_rank",
}


class WorkspaceSettings(BaseModel):
    """工作目录与上游仓库配置。"""

    workdir: Path = Field(Path("/workspace"), description="所有仓库与日志所在目录")
    skyrl_repo: str = Field("https://github.com/NovaSky-AI/SkyRL.git", description="SkyRL 仓库地址")
    skyrl_dir: str = Field("SkyRL", description="SkyRL 在工作目录下的目录名")
    server_subdir: str = Field("skyrl-tx", description="tx 服务所在子目录")
    cookbook_repo: str = Field(
        "https://github.com/thinking-machines-lab/tinker-cookbook.git",
        description="tinker-cookbook 仓库地址",
    )
    cookbook_dir: str = Field("tinker-cookbook", description="cookbook 在工作目录下的目录名")
    events_file: Optional[Path] = Field(Path("txlaunch_events.jsonl"), description="结构化事件日志，相对路径基于 workdir")

    @property
    def skyrl_path(self) -> Path:
        return self.workdir / self.skyrl_dir

    @property
    def server_path(self) -> Path:
        return self.skyrl_path / self.server_subdir

    @property
    def cookbook_path(self) -> Path:
        return self.workdir / self.cookbook_dir


class LaunchDefaults(BaseModel):
    """非启发式字段的固定默认值。"""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str = Field("Qwen/Qwen3-4B", min_length=1, description="基座模型")
    port: int = Field(8000, ge=1, le=65535, description="服务监听端口")
    max_adapters: int = Field(3, ge=1, description="最大 LoRA adapter 数")
    max_adapter_rank: int = Field(1, ge=1, description="最大 LoRA rank")


class ServerSettings(BaseModel):
    """tx 服务进程相关配置。"""

    session_name: str = Field("skyrl-tx", description="tmux 会话名")
    log_file: str = Field("skyrl_tx_out.log", description="服务输出日志文件名，位于 workdir 下")
    module: str = Field("tx.tinker.api", description="uv run -m 启动的模块")
    extras: list[str] = Field(default_factory=lambda: ["gpu", "tinker"], description="uv --extra 列表")
    host: str = Field("127.0.0.1", description="就绪检测使用的地址")


class ReadinessSettings(BaseModel):
    """就绪等待参数。"""

    timeout_seconds: float = Field(120.0, description="等待端口打开的超时时间")
    health_path: str = Field("/health", description="健康检查路径")
    health_timeout_seconds: float = Field(5.0, description="健康检查 HTTP 超时")

    @field_validator("timeout_seconds", "health_timeout_seconds")
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("超时时间必须大于 0")
        return value


class RLLoopSettings(BaseModel):
    """tinker-cookbook RL loop 配置。"""

    enabled: bool = Field(False, description="服务就绪后是否运行 RL loop")
    script: str = Field("rl_loop.py", description="recipes 目录下的入口脚本")
    max_length: int = Field(1024, ge=1)
    save_every: int = Field(100, ge=1)


class SecretsSettings(BaseModel):
    """仅传递给子进程的凭据。"""

    hf_token: str = Field("", description="HuggingFace Token")
    wandb_api_key: str = Field("", description="Weights & Biases API Key")
    tinker_api_key: str = Field("dummy", description="Tinker API Key，本地服务不校验")

    def as_env(self) -> Dict[str, str]:
        return {
            "HF_TOKEN": self.hf_token,
            "WANDB_API_KEY": self.wandb_api_key,
            "TINKER_API_KEY": self.tinker_api_key,
        }


class ConfigModel(BaseModel):
    """顶层配置模型。"""

    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    defaults: LaunchDefaults = Field(default_factory=LaunchDefaults)
    server: ServerSettings = Field(default_factory=ServerSettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)
    rl_loop: RLLoopSettings = Field(default_factory=RLLoopSettings)
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)


@dataclass(frozen=True)
class Overrides:
    """用户提供的原始覆盖值，None 表示未设置。"""

    model: Optional[str] = None
    port: Optional[str] = None
    tp_size: Optional[str] = None
    train_micro_bs: Optional[str] = None
    max_lora_adapters: Optional[str] = None
    max_lora_rank: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Overrides":
        """从环境变量读取覆盖值，空字符串视为未设置。"""

        if environ is None:
            environ = os.environ
        values: Dict[str, Optional[str]] = {}
        for env_name, attr in OVERRIDE_FIELDS.items():
            raw = environ.get(env_name)
            values[attr] = raw if raw else None
        return cls(**values)


@dataclass
class LauncherConfig:
    """供启动流程消费的配置对象。"""

    model: ConfigModel
    overrides: Overrides = field(default_factory=Overrides)
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def workspace(self) -> WorkspaceSettings:
        return self.model.workspace

    @property
    def defaults(self) -> LaunchDefaults:
        return self.model.defaults

    @property
    def server(self) -> ServerSettings:
        return self.model.server

    @property
    def readiness(self) -> ReadinessSettings:
        return self.model.readiness

    @property
    def rl_loop(self) -> RLLoopSettings:
        return self.model.rl_loop

    @property
    def secrets(self) -> SecretsSettings:
        return self.model.secrets

    @property
    def server_log_path(self) -> Path:
        return self.workspace.workdir / self.server.log_file

    @property
    def events_path(self) -> Optional[Path]:
        events = self.workspace.events_file
        if events is None:
            return None
        if events.is_absolute():
            return events
        return self.workspace.workdir / events


def _load_yaml_config(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件内容，若不存在或为空则返回空字典。"""

    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fp:
            data = yaml.safe_load(fp) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML {path} 解析失败: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"YAML {path} 顶层必须为映射")
    return data


def _merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """递归合并配置字典，override 优先。"""

    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _build_env_override(environ: Mapping[str, str]) -> Dict[str, Any]:
    """由环境变量构造覆盖字典，未设置的键不会覆盖 YAML。"""

    override: Dict[str, Dict[str, Any]] = {
        "workspace": {
            "workdir": environ.get("WORKDIR") or None,
        },
        "readiness": {
            "timeout_seconds": environ.get("READY_TIMEOUT") or None,
        },
        "rl_loop": {
            "enabled": environ.get("RUN_RL_LOOP") == "1" if environ.get("RUN_RL_LOOP") else None,
        },
        "secrets": {
            "hf_token": environ.get("HF_TOKEN"),
            "wandb_api_key": environ.get("WANDB_API_KEY"),
            "tinker_api_key": environ.get("TINKER_API_KEY") or None,
        },
    }
    cleaned: Dict[str, Any] = {}
    for section, values in override.items():
        kept = {key: value for key, value in values.items() if value is not None}
        if kept:
            cleaned[section] = kept
    return cleaned


def load_config(
    config_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LauncherConfig:
    """加载配置：优先读取 .env，再解析 YAML，并生成 LauncherConfig。"""

    if environ is None:
        if env_path is None:
            env_path = Path(".env")
        if env_path.exists():
            load_dotenv(env_path, override=False)
        environ = os.environ

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    yaml_config = _load_yaml_config(config_path)
    merged = _merge_dict(yaml_config, _build_env_override(environ))
    model = ConfigModel.model_validate(merged)
    return LauncherConfig(model=model, overrides=Overrides.from_env(environ), raw_data=merged)


__all__ = [
    "OVERRIDE_FIELDS",
    "WorkspaceSettings",
    "LaunchDefaults",
    "ServerSettings",
    "ReadinessSettings",
    "RLLoopSettings",
    "SecretsSettings",
    "ConfigModel",
    "Overrides",
    "LauncherConfig",
    "load_config",
]
