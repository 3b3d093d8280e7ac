"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。

优先级（高 → 低）：构造参数 > 环境变量 > .env > config.yaml > 字段默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("SQLCHAT_CONFIG_FILE")
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
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Built-in 模式下的 Provider 凭据 ----
    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_endpoint: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    openai_model: Optional[str] = Field(default=None, description="Built-in 模式使用的 OpenAI 模型")
    # Claude / Anthropic
    claude_api_key: Optional[str] = Field(default=None, description="Claude API 密钥")
    claude_endpoint: str = Field(default="https://api.anthropic.com", description="Claude API 基础URL")
    claude_model: Optional[str] = Field(default=None, description="Built-in 模式使用的 Claude 模型")
    # Azure OpenAI
    azure_openai_api_key: Optional[str] = Field(default=None, description="Azure OpenAI API 密钥")
    azure_openai_endpoint: Optional[str] = Field(default=None, description="Azure OpenAI 资源地址")
    azure_openai_deployment: Optional[str] = Field(default=None, description="Azure 部署名")
    azure_openai_api_version: str = Field(default="2023-05-15", description="Azure OpenAI API 版本")
    # 本地推理服务
    ollama_endpoint: str = Field(default="http://localhost:11434", description="Ollama 默认地址")
    lmstudio_endpoint: str = Field(default="http://localhost:1234", description="LM Studio 默认地址")

    # ---- 调用行为 ----
    provider_timeout: float = Field(default=6.0, gt=0, description="Provider 单次网络操作（连接、读取）的超时时间（秒）")
    provider_stream_timeout: float = Field(default=300.0, gt=0, description="单次 Provider 调用从发出请求到流结束的总时长上限（秒）")
    provider_max_tokens: int = Field(default=1024, ge=1, description="单次生成的最大 token 数")
    stream_pacing_delay: float = Field(
        default=0.02,
        ge=0.0,
        description="片段之间的节奏延迟（秒），用于前端“打字”效果，不是背压机制",
    )
    https_proxy: Optional[str] = Field(default=None, description="托管 Provider 使用的代理地址")
    pg_dump_path: str = Field(default="pg_dump", description="PostgreSQL schema 导出工具路径")
    schema_dump_timeout: float = Field(default=60.0, gt=0, description="schema 导出命令的超时时间（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    default_caller: str = Field(default="anonymous", description="未提供调用方身份时使用的默认值")

    # ---- HTTP 服务 ----
    api_host: str = Field(default="127.0.0.1", description="HTTP 服务监听地址")
    api_port: int = Field(default=8000, ge=1, le=65535, description="HTTP 服务监听端口")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "claude_api_key", "azure_openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.upper()

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


settings = Settings()
