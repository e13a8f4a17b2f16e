"""依赖注入配置模块"""

import logging
from typing import Optional

from fastapi import Depends, Header
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

# 数据库会话依赖
from app.db.session import get_db

# Redis 依赖
from app.core.redis import redis_client, redlock
from app.core.exceptions import AuthenticationError, UnauthorizedError
from app.models.user import User
from app.services.identity_store import IdentityStore
from app.services.inventory_service import InventoryService
from app.services.order_service import OrderService
from app.services.reporting_service import ReportingService

logger = logging.getLogger(__name__)


def get_redis():
    """获取同步 Redis 客户端，Redis 不可用时返回 None（降级为无缓存）"""
    try:
        redis_client.ping()
    except RedisError as e:
        logger.warning(f"Redis 不可用，跳过缓存: {e}")
        return None
    return redis_client


def get_redlock():
    """获取 Redlock 分布式锁实例"""
    return redlock if redlock.servers else None


def get_current_user(
    x_user_id: Optional[int] = Header(None, description="调用方用户ID"),
    db: Session = Depends(get_db),
) -> User:
    """从 X-User-Id 请求头解析当前用户"""
    if x_user_id is None:
        raise AuthenticationError()
    user = IdentityStore(db).fetch_user(x_user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("用户不存在或已停用")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """仅允许 admin / super_admin"""
    if not user.is_admin:
        raise UnauthorizedError("需要管理员权限")
    return user


def get_order_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock)
) -> OrderService:
    """获取订单服务实例（依赖注入）"""
    # Redis 不可用时锁也拿不到，直接不加锁
    return OrderService(db=db, redis=redis, rlock=rlock if redis is not None else None)


def get_reporting_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> ReportingService:
    return ReportingService(db=db, redis=redis)


def get_inventory_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> InventoryService:
    """获取库存服务实例（依赖注入）"""
    return InventoryService(db=db, redis=redis)


# 常用的依赖注入别名
DatabaseDep = Depends(get_db)
RedisDep = Depends(get_redis)
RedlockDep = Depends(get_redlock)
CurrentUserDep = Depends(get_current_user)
AdminDep = Depends(require_admin)
OrderServiceDep = Depends(get_order_service)
ReportingServiceDep = Depends(get_reporting_service)
InventoryServiceDep = Depends(get_inventory_service)
