"""Redis 客户端配置模块"""

import os

from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from redlock import Redlock

from app.core.config import settings

REDIS_URL = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# 基础 Redis 客户端（缓存）
redis_client = Redis.from_url(REDIS_URL, decode_responses=True)
async_redis = AsyncRedis.from_url(REDIS_URL, decode_responses=True)


# Redlock 配置（支持单实例和多实例）
def create_redlock():
    """根据 REDIS_HOSTS 创建 Redlock 实例，多个实例用逗号分隔"""
    redis_hosts = os.getenv("REDIS_HOSTS", settings.REDIS_HOST)
    servers = [
        {"host": host.strip(), "port": settings.REDIS_PORT, "db": settings.REDIS_DB}
        for host in redis_hosts.split(",")
        if host.strip()
    ]
    return Redlock(servers)


redlock = create_redlock()

__all__ = [
    "redis_client",
    "async_redis",
    "redlock",
    "REDIS_URL",
]
