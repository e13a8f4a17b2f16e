"""库存服务实现"""

import json
import logging
from typing import List

from redis import Redis
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.models.inventory_logs import ChangeType, InventoryLog
from app.models.product import Product
from app.models.product_variant import ProductVariant
from app.services.catalog_store import CatalogStore

logger = logging.getLogger(__name__)


def stock_cache_key(product_id: int) -> str:
    return f"stock:product:{product_id}"


class InventoryService:
    """库存查询与对账"""

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis
        self.catalog = CatalogStore(db)

    def get_product_stock(self, product_id: int) -> dict:
        """查询商品库存（总库存 + 各规格库存，带缓存）"""
        cache_key = stock_cache_key(product_id)

        # 先查缓存
        if self.redis:
            cached = self.redis.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit for product {product_id}")
                return json.loads(cached)

        # 缓存未命中，查询数据库
        product = self.catalog.fetch_product(product_id)
        if product is None:
            raise NotFoundError("product", product_id)

        data = {
            "product_id": product.id,
            "name": product.name,
            "status": product.status.value,
            "total_stock": product.total_stock,
            "total_sold": product.total_sold,
            "variants": [
                {
                    "sku": variant.sku,
                    "size": variant.size,
                    "color": variant.color,
                    "stock": variant.stock,
                }
                for variant in product.variants
            ],
        }

        if self.redis:
            self.redis.setex(cache_key, settings.STOCK_CACHE_TTL, json.dumps(data))
            logger.debug(f"Cache set for product {product_id}")

        return data

    def find_drifted_products(self, after_id: int = 0, batch_size: int = 500) -> List[tuple]:
        """找出总库存与规格库存之和不一致的商品

        Returns:
            [(product_id, total_stock, variant_sum), ...]，按 product_id 升序
        """
        variant_sum = func.coalesce(func.sum(ProductVariant.stock), 0)
        rows = self.db.execute(
            select(Product.id, Product.total_stock, variant_sum)
            .join(ProductVariant, ProductVariant.product_id == Product.id)
            .where(Product.id > after_id)
            .group_by(Product.id, Product.total_stock)
            .having(Product.total_stock != variant_sum)
            .order_by(Product.id)
            .limit(batch_size)
        ).all()
        return [tuple(row) for row in rows]

    def reconcile_total_stock(self, batch_size: int = 500, dry_run: bool = False) -> int:
        """把有规格商品的总库存校正为各规格库存之和

        Args:
            batch_size: 每批检查的商品数量
            dry_run: 只统计不修改

        Returns:
            需要（或已经）校正的商品数量
        """
        total_fixed = 0
        last_id = 0

        while True:
            rows = self.find_drifted_products(after_id=last_id, batch_size=batch_size)
            if not rows:
                break

            fixed_ids = []
            try:
                for product_id, total_stock, variant_sum in rows:
                    logger.info(
                        f"库存不一致: product_id={product_id}, total_stock={total_stock}, variants={variant_sum}"
                    )
                    fixed_ids.append(product_id)
                    if dry_run:
                        continue

                    # 写入时重新求和，避免与并发下单之间的竞争
                    after = self.db.execute(
                        update(Product)
                        .where(Product.id == product_id)
                        .values(
                            total_stock=select(func.coalesce(func.sum(ProductVariant.stock), 0))
                            .where(ProductVariant.product_id == product_id)
                            .scalar_subquery()
                        )
                        .returning(Product.total_stock)
                        .execution_options(synchronize_session="fetch")
                    ).scalar_one()
                    self.db.add(
                        InventoryLog(
                            product_id=product_id,
                            change_type=ChangeType.ADJUST,
                            quantity=after - total_stock,
                            before_stock=total_stock,
                            after_stock=after,
                            operator="system_reconcile",
                            source="reconcile_job",
                        )
                    )

                if not dry_run:
                    self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"库存对账失败: {str(e)}")
                raise

            total_fixed += len(fixed_ids)
            if self.redis and fixed_ids and not dry_run:
                for product_id in fixed_ids:
                    self.redis.delete(stock_cache_key(product_id))
                    logger.debug(f"Cache invalidated for product {product_id} after reconcile")

            last_id = rows[-1][0]
            if len(rows) < batch_size:
                break

        logger.info(f"库存对账完成，共 {total_fixed} 个商品{'需要校正' if dry_run else '已校正'}")
        return total_fixed
