"""库存对账本地执行脚本

    python -m app.jobs.reconcile_stock --batch-size 200 --dry-run
"""

import argparse
import logging

from app.core.redis import redis_client
from app.db.session import SessionLocal
from app.services.inventory_service import InventoryService

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run_reconcile(batch_size: int = 500, dry_run: bool = False, use_cache: bool = True) -> int:
    """执行库存对账

    Args:
        batch_size: 批处理大小
        dry_run: 试运行模式（只统计不修改）
        use_cache: 对账后是否清理 Redis 中的库存缓存
    """
    db = SessionLocal()
    try:
        service = InventoryService(db, redis_client if use_cache else None)
        count = service.reconcile_total_stock(batch_size, dry_run)
        if dry_run:
            logger.info(f"试运行模式：发现 {count} 个商品库存不一致")
        else:
            logger.info(f"对账完成：校正 {count} 个商品")
        return count
    except Exception as e:
        logger.error(f"对账执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='商品总库存对账工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=500,
        help='批处理大小 (默认: 500)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不修改'
    )
    parser.add_argument(
        '--no-cache',
        action='store_true',
        help='不连接 Redis，不清理库存缓存'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        result = run_reconcile(args.batch_size, args.dry_run, use_cache=not args.no_cache)
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    if args.dry_run:
        print(f"📊 试运行结果：{result} 个商品库存不一致")
    else:
        print(f"✅ 对账完成：校正了 {result} 个商品")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
