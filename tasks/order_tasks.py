"""订单 / 库存相关的 Celery 任务"""

import logging

from celery_app import app
from app.core.redis import redis_client
from app.db.session import SessionLocal
from app.services.inventory_service import InventoryService

logger = logging.getLogger(__name__)


@app.task(name='tasks.orders.reconcile_product_stock')
def reconcile_product_stock(batch_size: int = 500, dry_run: bool = False) -> int:
    """按规格库存重算商品总库存

    Args:
        batch_size: 批处理大小，默认500
        dry_run: 只统计不修改

    Returns:
        需要（或已经）校正的商品数量
    """
    db = SessionLocal()
    try:
        service = InventoryService(db, redis_client)
        count = service.reconcile_total_stock(batch_size, dry_run)
        logger.info(f"库存对账任务完成: fixed={count}, dry_run={dry_run}")
        return count
    except Exception as e:
        logger.error(f"库存对账任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


__all__ = ['reconcile_product_stock']
