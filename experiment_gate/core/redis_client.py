"""
Redis 客户端工具模块

提供统一的 Redis 连接和基础字符串读写封装（实验状态以 JSON 字符串存储）。
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis
from loguru import logger

from experiment_gate.core.config import settings


class RedisClient:
    """Redis 异步客户端封装"""

    def __init__(self):
        self._client: Optional[redis.Redis] = None

    async def connect(self):
        """建立 Redis 连接"""
        try:
            if settings.REDIS_UNIX_SOCKET:
                self._client = redis.Redis(
                    unix_socket_path=settings.REDIS_UNIX_SOCKET,
                    db=settings.REDIS_DB,
                    password=settings.REDIS_PASSWORD,
                    decode_responses=True,  # 自动解码为字符串
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                )
            else:
                self._client = redis.Redis(
                    host=settings.REDIS_HOST,
                    port=settings.REDIS_PORT,
                    db=settings.REDIS_DB,
                    password=settings.REDIS_PASSWORD,
                    decode_responses=True,  # 自动解码为字符串
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                )
            # 测试连接
            await self._client.ping()
            target = (
                settings.REDIS_UNIX_SOCKET
                if settings.REDIS_UNIX_SOCKET
                else f"{settings.REDIS_HOST}:{settings.REDIS_PORT}"
            )
            logger.info(f"✅ Redis 连接成功: {target}")
        except Exception as e:
            logger.error(f"❌ Redis 连接失败: {e}")
            self._client = None

    async def close(self):
        """关闭 Redis 连接"""
        if self._client:
            await self._client.aclose()
            logger.info("Redis 连接已关闭")

    @property
    def client(self):
        """获取 Redis 客户端实例"""
        if not self._client:
            raise RuntimeError("Redis 客户端未初始化，请先调用 connect()")
        return self._client

    # ========================================
    # 字符串读写（String 类型）
    # ========================================
    async def get_value(self, key: str) -> Optional[str]:
        value = await self.client.get(key)
        return None if value is None else str(value)

    async def set_value(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def delete_key(self, key: str) -> bool:
        result = await self.client.delete(key)
        return result > 0


# 全局 Redis 客户端实例
redis_client = RedisClient()


async def get_redis_client() -> RedisClient:
    """FastAPI 依赖注入"""
    return redis_client
