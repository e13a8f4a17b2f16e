"""订单生命周期服务

订单状态的唯一写入方，也是唯一会触发库存补偿的地方。

下单流程（saga）：
    1. 逐项校验商品 / 规格 / 库存，不做任何写入
    2. 按 (商品ID, SKU) 顺序逐项条件扣减库存（stock -= qty WHERE stock >= qty）
       任一项失败 -> 已扣减的项全部归还（COMPENSATE），提交补偿后报库存不足
       数据库异常 -> 整个事务回滚，报 PersistenceFailureError
    3. 计价、写订单与首条状态流水，与扣减在同一事务中提交
"""

import logging
import random
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from redis import Redis
from redlock import Redlock
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.core.exceptions import (
    CannotCancelError,
    CannotDeleteError,
    CannotReturnError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    OrderError,
    OrderLockedError,
    PersistenceFailureError,
    ProductUnavailableError,
    ReturnAlreadyExistsError,
    ReturnNotFoundError,
    ReturnWindowExpiredError,
    UnauthorizedError,
    ValidationError,
    VariantNotFoundError,
)
from app.db.base import as_utc, utcnow
from app.models.inventory_logs import ChangeType, InventoryLog
from app.models.order import (
    CANCELLABLE_STATUSES,
    RETURN_TRANSITIONS,
    CancelledBy,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundSource,
    RefundStatus,
    ReturnStatus,
    ReturnType,
    can_transition,
)
from app.models.order_item import OrderItem
from app.models.order_status_history import OrderStatusHistory
from app.models.product import ProductStatus
from app.models.user import User
from app.services.catalog_store import CatalogStore
from app.services.inventory_service import stock_cache_key
from app.services.pricing import CouponEngine, NullCouponEngine, calculate_pricing, to_money

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "created_at": Order.created_at,
    "updated_at": Order.updated_at,
    "total": Order.total,
    "status": Order.status,
    "order_number": Order.order_number,
}


def generate_order_number(now: Optional[datetime] = None) -> str:
    """ORD + 两位年 + 两位月 + 4位随机数"""
    now = now or utcnow()
    return f"ORD{now:%y%m}{random.randint(0, 9999):04d}"


def day_bounds(start_date=None, end_date=None):
    """日期区间转为 UTC 时间，结束日期包含当天"""
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
    end = datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date else None
    return start, end


class _ReservationLine:
    """校验通过、待扣减的一行"""

    def __init__(self, product, variant, quantity: int, unit_price: Decimal):
        self.product = product
        self.variant = variant
        self.quantity = quantity
        self.unit_price = unit_price

    @property
    def sku(self) -> Optional[str]:
        return self.variant.sku if self.variant is not None else None


class OrderService:
    """订单核心服务类"""

    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        rlock: Redlock = None,
        coupon_engine: Optional[CouponEngine] = None,
        allow_price_override: Optional[bool] = None,
    ):
        self.db = db
        self.redis = redis
        self.rlock = rlock
        self.catalog = CatalogStore(db)
        self.coupon_engine = coupon_engine or NullCouponEngine()
        self.allow_price_override = (
            settings.ALLOW_PRICE_OVERRIDE if allow_price_override is None else allow_price_override
        )

    # ==================== 用户操作 ====================

    def create_order(self, user: User, request) -> Order:
        """创建订单并扣减库存"""
        lines, subtotal = self._validate_items(request.items)
        order_number = self._next_order_number()

        self._reserve_stock(lines, order_number)

        try:
            coupon_code = request.coupon.code if request.coupon else None
            pricing = calculate_pricing(subtotal, coupon_code, self.coupon_engine)
            now = utcnow()
            paid = request.payment.method != PaymentMethod.COD
            shipping_address = request.shipping_address.model_dump()
            billing_address = (
                request.billing_address.model_dump(exclude_none=True)
                if request.billing_address
                else shipping_address
            )

            order = Order(
                order_number=order_number,
                user_id=user.id,
                subtotal=pricing.subtotal,
                discount=pricing.discount,
                shipping_charges=pricing.shipping_charges,
                tax=pricing.tax,
                total=pricing.total,
                shipping_address=shipping_address,
                billing_address=billing_address,
                payment_method=request.payment.method,
                # 支付网关为模拟实现：非货到付款视为已支付
                payment_status=PaymentStatus.COMPLETED if paid else PaymentStatus.PENDING,
                transaction_id=request.payment.transaction_id,
                payment_gateway=request.payment.payment_gateway,
                paid_at=now if paid else None,
                coupon_code=coupon_code,
                coupon_discount=pricing.discount,
                customer_notes=request.customer_notes,
                status=OrderStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            for line in lines:
                order.items.append(self._snapshot(line))
            self._append_history(order, OrderStatus.PENDING, user.id, f"new order by {user.name}")

            self.db.add(order)
            self._commit("create_order")
        except Exception:
            self.db.rollback()
            raise

        self._invalidate_stock_cache({line.product.id for line in lines})
        logger.info(
            f"下单成功: order_number={order_number}, user_id={user.id}, total={pricing.total}"
        )
        return order

    def get_user_orders(self, user: User, query) -> Tuple[List[Order], int]:
        """当前用户自己的订单"""
        return self._list_orders(query, user_id=user.id)

    def get_order_by_id(self, order_id: int, actor: User) -> Order:
        order = self._get_order(order_id)
        if order.user_id != actor.id and not actor.is_admin:
            raise UnauthorizedError("无权查看该订单")
        return order

    def cancel_order(
        self, order_id: int, actor: User, reason: str, comment: Optional[str] = None
    ) -> Order:
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            if order.user_id != actor.id and not actor.is_admin:
                raise UnauthorizedError("无权取消该订单")
            if order.status not in CANCELLABLE_STATUSES:
                raise CannotCancelError(order.status.value)

            cancelled_by = CancelledBy.ADMIN if actor.is_admin else CancelledBy.USER
            try:
                product_ids = self._apply_cancellation(order, actor.id, reason, cancelled_by, comment)
                self._commit("cancel_order")
            except Exception:
                self.db.rollback()
                raise

        self._invalidate_stock_cache(product_ids)
        logger.info(f"订单已取消: order_number={order.order_number}, by={cancelled_by.value}")
        return order

    def return_order(
        self,
        order_id: int,
        actor: User,
        reason: str,
        return_type: ReturnType = ReturnType.REFUND,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """申请退货（仅限订单所有者）"""
        now = as_utc(now) or utcnow()
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            if order.user_id != actor.id:
                raise UnauthorizedError("无权对该订单申请退货")
            if order.return_status is not None:
                raise ReturnAlreadyExistsError(order.return_status.value)
            if order.status != OrderStatus.DELIVERED:
                raise CannotReturnError(order.status.value)

            reference = as_utc(order.delivered_at) or as_utc(order.created_at)
            window = settings.RETURN_WINDOW_DAYS
            if now - reference > timedelta(days=window):
                raise ReturnWindowExpiredError(reference, window)

            order.return_reason = reason
            order.return_type = return_type
            order.return_status = ReturnStatus.REQUESTED
            order.return_requested_at = now
            order.return_refund_amount = order.total
            order.return_comment = comment
            self._commit("return_order")

        logger.info(f"退货申请已提交: order_number={order.order_number}")
        return order

    def track_order(self, order_number: str) -> Order:
        order = self.db.execute(
            select(Order)
            .where(Order.order_number == order_number)
            .options(selectinload(Order.status_history))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("order", order_number)
        return order

    # ==================== 管理员操作 ====================

    def get_all_orders(self, query) -> Tuple[List[Order], int]:
        return self._list_orders(query, user_id=query.user_id)

    def update_order_status(
        self,
        order_id: int,
        actor: User,
        status: OrderStatus,
        comment: Optional[str] = None,
        shipping=None,
    ) -> Order:
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            previous = order.status
            try:
                product_ids = self._transition(order, status, actor.id, comment, shipping)
                self._commit("update_order_status")
            except Exception:
                self.db.rollback()
                raise

        self._invalidate_stock_cache(product_ids)
        logger.info(
            f"订单状态变更: order_number={order.order_number}, {previous.value} -> {status.value}"
        )
        return order

    def update_return_status(
        self,
        order_id: int,
        actor: User,
        status: ReturnStatus,
        comment: Optional[str] = None,
        refund_amount=None,
    ) -> Order:
        """推进退货流程：Requested -> Approved|Rejected -> Picked Up -> Completed"""
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            current = order.return_status
            if current is None:
                raise ReturnNotFoundError(order.order_number)
            if status not in RETURN_TRANSITIONS.get(current, set()):
                raise InvalidTransitionError(current.value, status.value, subject="退货")

            amount = None
            if status == ReturnStatus.APPROVED:
                amount = to_money(refund_amount) if refund_amount is not None else order.total
                if amount > order.total:
                    raise ValidationError(
                        "退款金额不能超过订单金额",
                        {"refund_amount": f"最大 {order.total}"},
                    )

            now = utcnow()
            try:
                order.return_status = status
                if comment is not None:
                    order.return_comment = comment

                if status == ReturnStatus.APPROVED:
                    order.return_approved_at = now
                    order.return_refund_amount = amount
                elif status == ReturnStatus.PICKED_UP:
                    if can_transition(order.status, OrderStatus.RETURNED):
                        self._set_status(order, OrderStatus.RETURNED, actor.id, comment or "退货已取件")
                elif status == ReturnStatus.COMPLETED:
                    if can_transition(order.status, OrderStatus.REFUNDED):
                        self._set_status(order, OrderStatus.REFUNDED, actor.id, comment or "退货完成，已退款")
                    order.payment_status = PaymentStatus.REFUNDED
                    order.refund_source = RefundSource.RETURN
                    order.refund_status = RefundStatus.COMPLETED
                    order.refund_amount = order.return_refund_amount or order.total
                    order.refunded_at = now

                self._commit("update_return_status")
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"退货状态变更: order_number={order.order_number}, {current.value} -> {status.value}")
        return order

    def update_payment_status(
        self,
        order_id: int,
        status: PaymentStatus,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        refund_amount=None,
    ) -> Order:
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            now = utcnow()

            refunding = status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)
            if refunding:
                if refund_amount is None:
                    raise ValidationError("退款状态必须提供退款金额", {"refund_amount": "必填"})
                amount = to_money(refund_amount)
                if amount > order.total:
                    raise ValidationError(
                        "退款金额不能超过订单金额",
                        {"refund_amount": f"最大 {order.total}"},
                    )

            order.payment_status = status
            if transaction_id:
                order.transaction_id = transaction_id
            if paid_at:
                order.paid_at = paid_at
            if status == PaymentStatus.COMPLETED and order.paid_at is None:
                order.paid_at = now
            if refunding:
                order.refund_source = RefundSource.PAYMENT
                order.refund_status = RefundStatus.COMPLETED
                order.refund_amount = amount
                order.refunded_at = now
            self._commit("update_payment_status")

        logger.info(f"支付状态变更: order_number={order.order_number}, status={status.value}")
        return order

    def update_shipping_details(self, order_id: int, shipping) -> Order:
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            self._merge_shipping(order, shipping)
            self._commit("update_shipping_details")
        logger.info(f"物流信息已更新: order_number={order.order_number}")
        return order

    def add_admin_notes(self, order_id: int, notes: str) -> Order:
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            order.admin_notes = notes
            self._commit("add_admin_notes")
        return order

    def bulk_update_orders(
        self,
        order_ids: List[int],
        status: OrderStatus,
        actor: User,
        comment: Optional[str] = None,
    ) -> dict:
        """批量变更状态，每个订单单独校验、单独提交"""
        if len(order_ids) > settings.BULK_UPDATE_LIMIT:
            raise ValidationError(
                f"单次最多更新 {settings.BULK_UPDATE_LIMIT} 个订单",
                {"order_ids": f"最多 {settings.BULK_UPDATE_LIMIT} 个"},
            )

        unique_ids = list(dict.fromkeys(order_ids))
        orders = self.db.execute(
            select(Order).where(Order.id.in_(unique_ids)).options(selectinload(Order.items))
        ).scalars().all()
        found = {order.id: order for order in orders}

        modified = 0
        failed = []
        touched_products = set()
        for order_id in unique_ids:
            order = found.get(order_id)
            if order is None:
                failed.append({"order_id": order_id, "error_code": "NOT_FOUND", "message": "订单不存在"})
                continue
            try:
                with self._order_lock(order_id), self._persistence_guard("bulk_update_orders"):
                    touched_products |= self._transition(order, status, actor.id, comment, None)
                    self._commit("bulk_update_orders")
                modified += 1
            except PersistenceFailureError:
                # 已回滚；数据库故障时后面的订单也写不进去，直接中止
                logger.error(f"批量更新在订单 {order_id} 处中止: modified={modified}")
                raise
            except OrderError as e:
                self.db.rollback()
                logger.warning(f"批量更新跳过订单 {order_id}: {e.message}")
                failed.append({"order_id": order_id, "error_code": e.error_code, "message": e.message})

        self._invalidate_stock_cache(touched_products)
        logger.info(f"批量更新完成: status={status.value}, matched={len(found)}, modified={modified}")
        return {"matched": len(found), "modified": modified, "failed": failed}

    def delete_order(self, order_id: int) -> None:
        """只允许删除已取消的订单"""
        with self._order_lock(order_id):
            order = self._get_order(order_id)
            if order.status != OrderStatus.CANCELLED:
                raise CannotDeleteError(order.status.value)
            order_number = order.order_number
            self.db.delete(order)
            self._commit("delete_order")
        logger.info(f"订单已删除: order_number={order_number}")

    # ==================== 状态机 ====================

    def _transition(self, order: Order, status: OrderStatus, actor_id, comment, shipping) -> set:
        """校验并执行一次状态变更，返回需要刷新库存缓存的商品ID"""
        if not can_transition(order.status, status):
            raise InvalidTransitionError(order.status.value, status.value)

        if status == OrderStatus.CANCELLED:
            return self._apply_cancellation(
                order, actor_id, comment or "管理员取消", CancelledBy.ADMIN, comment
            )

        if status == OrderStatus.SHIPPED:
            courier = (shipping.courier if shipping else None) or order.courier
            tracking_number = (shipping.tracking_number if shipping else None) or order.tracking_number
            if not courier or not tracking_number:
                raise ValidationError(
                    "发货必须提供物流公司和运单号",
                    {"shipping": "courier 和 tracking_number 必填"},
                )

        if shipping:
            self._merge_shipping(order, shipping)
        if status == OrderStatus.SHIPPED:
            order.shipped_at = utcnow()
        elif status == OrderStatus.DELIVERED:
            order.delivered_at = utcnow()

        self._set_status(order, status, actor_id, comment)
        return set()

    def _set_status(self, order: Order, status: OrderStatus, actor_id, comment) -> None:
        order.status = status
        self._append_history(order, status, actor_id, comment)

    def _append_history(self, order: Order, status: OrderStatus, actor_id, comment) -> None:
        order.status_history.append(
            OrderStatusHistory(
                status=status,
                comment=comment,
                updated_by=actor_id,
                timestamp=utcnow(),
            )
        )

    def _apply_cancellation(self, order, actor_id, reason, cancelled_by, comment=None) -> set:
        now = utcnow()
        order.cancellation_reason = reason
        order.cancelled_by = cancelled_by
        order.cancelled_at = now

        if order.payment_status == PaymentStatus.COMPLETED:
            order.refund_source = RefundSource.CANCELLATION
            order.refund_status = RefundStatus.PENDING
            order.refund_amount = order.total
            order.payment_status = PaymentStatus.REFUNDED

        self._set_status(order, OrderStatus.CANCELLED, actor_id, comment or reason)

        restored = set()
        with self._persistence_guard("release_stock"):
            for item in order.items:
                if self._restore_line(item.product_id, item.variant_sku, item.quantity,
                                      order.order_number, ChangeType.RELEASE):
                    restored.add(item.product_id)
        return restored

    # ==================== 库存 ====================

    def _validate_items(self, items) -> Tuple[List[_ReservationLine], Decimal]:
        lines = []
        subtotal = Decimal("0")
        for item in items:
            product = self.catalog.fetch_product(item.product)
            if product is None:
                raise NotFoundError("product", item.product)
            if not product.is_active or product.status != ProductStatus.ACTIVE:
                raise ProductUnavailableError(product.name)

            sku = item.variant.sku if item.variant else None
            variant = None
            if sku:
                variant = product.find_variant(sku)
                if variant is None:
                    raise VariantNotFoundError(product.name, sku)
                if variant.stock < item.quantity:
                    raise InsufficientStockError(product.name, item.quantity, variant.stock, sku)
                catalog_price = variant.price if variant.price is not None else product.price_selling
            else:
                # 有规格的商品必须指定规格，否则聚合库存会和规格库存对不上
                if product.variants:
                    raise VariantNotFoundError(product.name, None)
                if product.total_stock < item.quantity:
                    raise InsufficientStockError(product.name, item.quantity, product.total_stock)
                catalog_price = product.price_selling

            if item.price is not None and self.allow_price_override:
                unit_price = to_money(item.price)
            else:
                unit_price = to_money(catalog_price)

            lines.append(_ReservationLine(product, variant, item.quantity, unit_price))
            subtotal += unit_price * item.quantity
        return lines, subtotal

    def _reserve_stock(self, lines: List[_ReservationLine], order_number: str) -> None:
        # 固定按 (商品ID, SKU) 顺序扣减，并发下单时行锁顺序一致，避免死锁
        ordered = sorted(lines, key=lambda line: (line.product.id, line.sku or ""))
        reserved = []
        try:
            with self._persistence_guard("reserve_stock"):
                for line in ordered:
                    self._reserve_line(line, order_number)
                    reserved.append(line)
        except InsufficientStockError as e:
            logger.warning(
                f"库存扣减失败，回补已扣减的 {len(reserved)} 项: order_number={order_number}, {e.message}"
            )
            with self._persistence_guard("compensate_reservation"):
                for line in reversed(reserved):
                    self._restore_line(line.product.id, line.sku, line.quantity,
                                       order_number, ChangeType.COMPENSATE)
            self._commit("compensate_reservation")
            raise
        except Exception:
            self.db.rollback()
            raise

    def _reserve_line(self, line: _ReservationLine, order_number: str) -> None:
        product = line.product
        if line.sku:
            after = self.catalog.decrement_variant_stock(line.sku, line.quantity)
            if after is None:
                available = self.catalog.current_stock(product.id, line.sku)
                raise InsufficientStockError(product.name, line.quantity, available, line.sku)
            self.catalog.adjust_total_stock(product.id, -line.quantity)
        else:
            after = self.catalog.decrement_total_stock(product.id, line.quantity)
            if after is None:
                available = self.catalog.current_stock(product.id)
                raise InsufficientStockError(product.name, line.quantity, available)

        self.catalog.record_sale(product.id, line.quantity)
        self._log_stock_change(product.id, line.sku, order_number, ChangeType.RESERVE, -line.quantity, after)

    def _restore_line(self, product_id, sku, quantity, order_number, change_type) -> bool:
        """归还一行库存；商品或规格已不存在时跳过并返回 False

        有规格时先归还规格库存，规格还在才同步聚合库存，保证 total_stock 等于各规格之和。
        """
        if sku:
            after = self.catalog.increment_variant_stock(sku, quantity)
            if after is None:
                logger.warning(f"归还库存时规格不存在，跳过: sku={sku}, order_number={order_number}")
                return False
            if self.catalog.adjust_total_stock(product_id, quantity) is None:
                logger.warning(f"归还库存时商品不存在: product_id={product_id}, order_number={order_number}")
        else:
            after = self.catalog.adjust_total_stock(product_id, quantity)
            if after is None:
                logger.warning(f"归还库存时商品不存在，跳过: product_id={product_id}, order_number={order_number}")
                return False

        self.catalog.record_sale(product_id, -quantity)
        self._log_stock_change(product_id, sku, order_number, change_type, quantity, after)
        return True

    def _log_stock_change(self, product_id, sku, order_number, change_type, quantity, after) -> None:
        self.db.add(
            InventoryLog(
                product_id=product_id,
                variant_sku=sku,
                order_number=order_number,
                change_type=change_type,
                quantity=quantity,
                before_stock=after - quantity,
                after_stock=after,
                operator=f"order_service_{order_number}",
                source="order_service",
            )
        )

    def _invalidate_stock_cache(self, product_ids) -> None:
        if self.redis and product_ids:
            for product_id in product_ids:
                self.redis.delete(stock_cache_key(product_id))
                logger.debug(f"Cache invalidated for product {product_id}")

    # ==================== 辅助 ====================

    def _snapshot(self, line: _ReservationLine) -> OrderItem:
        product = line.product
        variant = line.variant
        return OrderItem(
            product_id=product.id,
            product_name=product.name,
            product_image=product.image_url or "",
            variant_size=variant.size if variant else None,
            variant_color=variant.color if variant else None,
            variant_sku=variant.sku if variant else None,
            quantity=line.quantity,
            price=line.unit_price,
            discount=product.discount_percent or 0,
            subtotal=line.unit_price * line.quantity,
        )

    def _merge_shipping(self, order: Order, shipping) -> None:
        for field in ("courier", "tracking_number", "tracking_url", "estimated_delivery"):
            value = getattr(shipping, field, None)
            if value is not None:
                setattr(order, field, value)

    def _next_order_number(self) -> str:
        for _ in range(settings.ORDER_NUMBER_MAX_RETRIES):
            candidate = generate_order_number()
            exists = self.db.scalar(select(Order.id).where(Order.order_number == candidate))
            if exists is None:
                return candidate
        raise PersistenceFailureError("generate_order_number", "订单号连续冲突")

    def _get_order(self, order_id: int) -> Order:
        order = self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.status_history))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("order", order_id, message="订单不存在")
        return order

    def _list_orders(self, query, user_id=None) -> Tuple[List[Order], int]:
        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if query.status:
            filters.append(Order.status == query.status)
        if query.payment_status:
            filters.append(Order.payment_status == query.payment_status)
        if query.payment_method:
            filters.append(Order.payment_method == query.payment_method)

        start, end = day_bounds(query.start_date, query.end_date)
        if start:
            filters.append(Order.created_at >= start)
        if end:
            filters.append(Order.created_at <= end)
        if query.min_amount is not None:
            filters.append(Order.total >= query.min_amount)
        if query.max_amount is not None:
            filters.append(Order.total <= query.max_amount)
        if query.search:
            term = query.search
            filters.append(
                Order.order_number.icontains(term, autoescape=True)
                | Order.shipping_address["full_name"].as_string().icontains(term, autoescape=True)
                | Order.shipping_address["mobile"].as_string().icontains(term, autoescape=True)
            )

        column = SORT_COLUMNS[query.sort_by]
        ordering = column.asc() if query.sort_order in ("asc", "1") else column.desc()

        total = self.db.scalar(select(func.count()).select_from(Order).where(*filters))
        orders = self.db.execute(
            select(Order)
            .where(*filters)
            .options(selectinload(Order.items), selectinload(Order.status_history))
            .order_by(ordering, Order.id.desc())
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        ).scalars().all()
        return list(orders), total or 0

    @contextmanager
    def _order_lock(self, order_id: int):
        """订单级分布式锁，未配置 Redlock 时不加锁"""
        lock = None
        if self.rlock:
            lock = self.rlock.lock(f"lock:order:{order_id}", settings.ORDER_LOCK_TTL_MS)
            if not lock:
                raise OrderLockedError(order_id)
        try:
            yield
        finally:
            if self.rlock and lock:
                self.rlock.unlock(lock)

    @contextmanager
    def _persistence_guard(self, operation: str):
        """数据库异常：回滚并转成 PersistenceFailureError"""
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"数据写入失败: operation={operation}, error={str(e)}")
            raise PersistenceFailureError(operation, str(e)) from e

    def _commit(self, operation: str) -> None:
        with self._persistence_guard(operation):
            self.db.commit()
