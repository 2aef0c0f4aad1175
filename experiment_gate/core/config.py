# 读取 .env 配置
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Redis（实验状态持久化）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_UNIX_SOCKET: Optional[str] = None
    STORAGE_KEY_PREFIX: str = "experiment_gate:"

    # 远程实验配置
    EXPERIMENTS_URL: Optional[str] = None
    EXPERIMENTS_FETCH_TIMEOUT: float = 10.0

    # 运行环境（用于条件判断）
    APP_QUALITY: str = "stable"
    DISPLAY_LANGUAGE: str = "en"
    INSTALLED_EXTENSIONS: List[str] = []
    WORKSPACE_TAGS: List[str] = []

    # 启动完成后多久进入 EVENTUALLY 阶段（秒）
    EVENTUALLY_DELAY_SECONDS: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore" # 忽略多余的环境变量
    )

settings = Settings()
