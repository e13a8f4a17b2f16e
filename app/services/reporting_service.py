"""订单统计（只读）"""

import json
import logging
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from redis import Redis
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.order import Order, PaymentStatus
from app.services.order_service import day_bounds

logger = logging.getLogger(__name__)

# 时间分组格式：PostgreSQL to_char / SQLite strftime
PERIOD_FORMATS = {
    "postgresql": {
        "day": "YYYY-MM-DD",
        "week": 'IYYY-"W"IW',
        "month": "YYYY-MM",
        "year": "YYYY",
    },
    "sqlite": {
        "day": "%Y-%m-%d",
        "week": "%Y-W%W",
        "month": "%Y-%m",
        "year": "%Y",
    },
}


def _money(value) -> float:
    return float(Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _rounded(value) -> float:
    """客单价取整（四舍五入）"""
    return float(Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ReportingService:

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis

    def get_order_statistics(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """订单概览统计

        Args:
            start_date: 起始日期（含）
            end_date: 结束日期（含当天）
            now: 计算“今日”使用的时间，默认当前 UTC 时间

        Returns:
            总订单数、总收入、今日订单/收入、客单价以及各维度分布
        """
        now = now or datetime.now(timezone.utc)
        cache_key = f"stats:orders:{start_date}:{end_date}:{now.date()}"

        if self.redis:
            cached = self.redis.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit for {cache_key}")
                return json.loads(cached)

        filters = self._date_filters(start_date, end_date)
        completed = Order.payment_status == PaymentStatus.COMPLETED

        total_orders = self.db.scalar(select(func.count(Order.id)).where(*filters)) or 0
        total_revenue = self.db.scalar(
            select(func.coalesce(func.sum(Order.total), 0)).where(*filters, completed)
        )
        average = self.db.scalar(select(func.avg(Order.total)).where(*filters, completed))

        today_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        today_end = datetime.combine(now.date(), time.max, tzinfo=timezone.utc)
        today_range = (Order.created_at >= today_start, Order.created_at <= today_end)
        today_orders = self.db.scalar(
            select(func.count(Order.id)).where(*filters, *today_range)
        ) or 0
        today_revenue = self.db.scalar(
            select(func.coalesce(func.sum(Order.total), 0)).where(*filters, *today_range, completed)
        )

        stats = {
            "total_orders": total_orders,
            "total_revenue": _money(total_revenue),
            "today_orders": today_orders,
            "today_revenue": _money(today_revenue),
            "average_order_value": _rounded(average),
            "status_breakdown": self._breakdown(Order.status, filters),
            "payment_method_breakdown": self._breakdown(Order.payment_method, filters),
            "payment_status_breakdown": self._breakdown(Order.payment_status, filters),
        }

        if self.redis:
            self.redis.setex(cache_key, settings.STATS_CACHE_TTL, json.dumps(stats))
            logger.debug(f"Cache set for {cache_key}")

        return stats

    def get_revenue_analytics(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        group_by: str = "day",
    ) -> List[dict]:
        """按 day / week / month / year 汇总已支付订单收入"""
        period = self._period_expression(group_by).label("period")
        filters = self._date_filters(start_date, end_date)
        rows = self.db.execute(
            select(
                period,
                func.coalesce(func.sum(Order.total), 0),
                func.count(Order.id),
                func.avg(Order.total),
            )
            .where(*filters, Order.payment_status == PaymentStatus.COMPLETED)
            .group_by(period)
            .order_by(period)
        ).all()

        return [
            {
                "period": row[0],
                "revenue": _money(row[1]),
                "orders": row[2],
                "average_order_value": _rounded(row[3]),
            }
            for row in rows
        ]

    def _period_expression(self, group_by: str):
        dialect = self.db.get_bind().dialect.name
        formats = PERIOD_FORMATS.get(dialect)
        if formats is None:
            raise ValueError(f"不支持的数据库方言: {dialect}")
        fmt = formats[group_by]
        if dialect == "postgresql":
            return func.to_char(Order.created_at, fmt)
        return func.strftime(fmt, Order.created_at)

    def _breakdown(self, column, filters) -> dict:
        rows = self.db.execute(
            select(column, func.count(Order.id)).where(*filters).group_by(column)
        ).all()
        return {value.value: count for value, count in rows}

    @staticmethod
    def _date_filters(start_date, end_date) -> list:
        start, end = day_bounds(start_date, end_date)
        filters = []
        if start:
            filters.append(Order.created_at >= start)
        if end:
            filters.append(Order.created_at <= end)
        return filters
