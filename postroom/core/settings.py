"""
postroom.core.settings
~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（postroom/core/settings.py 向上三级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Postroom Backend", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=3001, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="postroom", description="MongoDB 数据库名")
    MONGO_USE_TRANSACTIONS: bool = Field(
        default=True,
        description="多文档写入是否使用事务（需要副本集；关闭后顺序写入）",
    )

    # ── 鉴权 ──────────────────────────────────────────────────────────
    JWT_SECRET: str = Field(
        default="default_jwt_secret_for_development",
        description="JWT 签名密钥",
    )
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT 签名算法")

    # ── OpenRouter ────────────────────────────────────────────────────
    OPENROUTER_API_KEY: str = Field(..., description="OpenRouter API Key")
    OPENROUTER_BASE_URL: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter（OpenAI 兼容）接口地址",
    )
    OPENROUTER_DEFAULT_MODEL: str = Field(
        default="openai/gpt-3.5-turbo",
        description="未指定模型时使用的默认模型",
    )
    OPENROUTER_MAX_TOKENS: int = Field(default=4000, description="单次回复最大 token 数")
    OPENROUTER_TEMPERATURE: float = Field(default=0.7, description="默认采样温度")
    OPENROUTER_TIMEOUT: float = Field(default=30.0, description="上游请求超时（秒）")
    OPENROUTER_APP_URL: str = Field(
        default="http://localhost:3000",
        description="作为 HTTP-Referer 发送给 OpenRouter 的站点地址",
    )
    OPENROUTER_APP_TITLE: str = Field(
        default="postroom",
        description="作为 X-Title 发送给 OpenRouter 的应用名",
    )

    # ── 聊天 ──────────────────────────────────────────────────────────
    CHAT_CONTEXT_LIMIT: int = Field(
        default=10,
        description="调用模型时携带的最近消息条数",
    )

    # ── 实时评论 ──────────────────────────────────────────────────────
    WS_AUTH_TIMEOUT: float = Field(default=5.0, description="连接鉴权超时（秒）")
    WS_ERROR_CLOSE_DELAY: float = Field(
        default=0.1,
        description="发送错误帧后延迟关闭连接的时间（秒）",
    )
    WS_COMMENT_INTERVAL: float = Field(
        default=0.5,
        description="同一连接两次发表评论的最小间隔（秒），0 表示不限流",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
