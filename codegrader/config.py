"""应用配置管理。

使用 Pydantic Settings 统一读取环境变量，便于在本地/生产之间切换。
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """核心配置项。

    - ``database_url``：默认使用本地 SQLite，便于快速启动。
    - ``gemini_*``：生成后端（Gemini）的密钥、地址与候选模型列表。
    - ``*_timeout_ms`` / ``*_max_tokens``：各类 AI 调用的时间与 token 预算。
    - ``piston_*``：代码执行沙箱配置。
    """

    database_url: str = Field(
        default="sqlite:///./storage/codegrader.db", description="SQLAlchemy 数据库 URL"
    )
    log_level: str = Field(default="INFO", description="日志级别")

    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API Key")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST 地址，用于模型发现",
    )
    gemini_discovery_timeout_seconds: float = Field(default=10.0, gt=0)
    preferred_models: List[str] = Field(
        default_factory=lambda: [
            "gemini-2.5-flash",
            "gemini-2.0-flash",
            "gemini-flash-latest",
            "gemini-2.5-pro",
            "gemini-pro-latest",
        ],
        description="候选模型偏好顺序：快速模型在前，能力强但较慢的模型在后",
    )
    fallback_models: List[str] = Field(
        default_factory=lambda: ["gemini-2.5-flash", "gemini-2.5-pro", "gemini-2.0-flash"],
        description="模型发现失败时使用的候选列表",
    )
    max_candidates: Optional[int] = Field(
        default=None, gt=0, description="单次调用最多尝试的模型数，None 表示不限"
    )

    evaluation_timeout_ms: int = Field(default=60000, gt=0)
    evaluation_max_tokens: int = Field(default=6000, gt=0)
    evaluation_temperature: float = Field(default=0.5, ge=0, le=1)
    topic_analysis_timeout_ms: int = Field(default=30000, gt=0)
    topic_analysis_max_tokens: int = Field(default=500, gt=0)
    generation_timeout_ms: int = Field(default=90000, gt=0)
    generation_max_tokens: int = Field(default=8000, gt=0)

    piston_url: str = Field(default="https://emkc.org/api/v2/piston/execute")
    piston_language: str = Field(default="java")
    piston_version: str = Field(default="15.0.2")
    piston_timeout_seconds: float = Field(default=30.0, gt=0)

    stale_evaluation_minutes: int = Field(
        default=30, gt=0, description="evaluating 状态超过该时长视为中断"
    )

    model_config = {
        "env_prefix": "CODEGRADER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """缓存后的全局配置实例。"""

    return Settings()
