"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("TAB_AGENT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class CoreSettings(BaseSettings):
    """协调器进程级配置（使用 Pydantic）。

    注意：这里只放部署相关的旋钮；用户可编辑的 Provider / 对话等
    持久化在 KeyValueStore 的 settings 文档里（见 domain.extension_settings）。
    """

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="LM Studio",
        description="首次启动时写入 settings 文档的预置 Provider 名称",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="LLM HTTP 超时时间（秒）")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    llm_max_tokens: int = Field(default=2000, ge=1, description="单次回答最大 token 数")

    # ---- 工具调用循环 ----
    max_tool_rounds: int = Field(
        default=10,
        ge=1,
        le=50,
        description="单条用户消息内允许的工具执行轮数，超过后循环以 FAILED 结束",
    )
    tool_timeout: float = Field(default=30.0, ge=1.0, description="等待页面工具执行回复的超时（秒）")

    # ---- 结果分页 ----
    truncation_limit: int = Field(
        default=10000,
        ge=100,
        description="工具结果超过该字符数时进入分页存储；同时也是页大小",
    )
    pager_max_entries: int = Field(default=50, ge=1, description="分页缓存最多保留的结果数")
    pager_ttl_seconds: float = Field(default=3600.0, gt=0, description="分页结果的保留时长（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别（DEBUG / INFO / WARNING / ERROR）")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = CoreSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = CoreSettings
