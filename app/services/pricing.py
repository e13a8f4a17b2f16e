"""订单计价

纯函数，不访问数据库也不修改入参：

    shipping_charges = 0 if subtotal >= 500 else 50
    tax              = round_half_up(subtotal * 0.18)
    total            = subtotal + shipping_charges + tax - discount

优惠券校验暂未实现，默认的 ``NullCouponEngine`` 总是返回 0；
接入真实优惠券系统时实现 ``CouponEngine.discount_for`` 即可，签名不变。
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

from pydantic import BaseModel

from app.core.config import settings

CENT = Decimal("0.01")


class PricingBreakdown(BaseModel):
    subtotal: Decimal
    discount: Decimal
    shipping_charges: Decimal
    tax: Decimal
    total: Decimal


class CouponEngine(Protocol):
    def discount_for(self, code: str, subtotal: Decimal) -> Decimal:
        ...


class NullCouponEngine:
    """优惠券占位实现"""

    def discount_for(self, code: str, subtotal: Decimal) -> Decimal:
        return Decimal("0")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _decimal_or(value, default) -> Decimal:
    return Decimal(str(value if value is not None else default))


def calculate_pricing(
    subtotal,
    coupon_code: Optional[str] = None,
    coupon_engine: Optional[CouponEngine] = None,
    free_shipping_threshold=None,
    shipping_charge=None,
    tax_rate=None,
) -> PricingBreakdown:
    subtotal = to_money(subtotal)
    threshold = _decimal_or(free_shipping_threshold, settings.FREE_SHIPPING_THRESHOLD)
    charge = to_money(_decimal_or(shipping_charge, settings.SHIPPING_CHARGE))
    rate = _decimal_or(tax_rate, settings.TAX_RATE)

    shipping_charges = Decimal("0.00") if subtotal >= threshold else charge
    # 税额取整（四舍五入到整数）
    tax = (subtotal * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    discount = Decimal("0.00")
    if coupon_code:
        engine = coupon_engine or NullCouponEngine()
        discount = to_money(engine.discount_for(coupon_code, subtotal))
    gross = subtotal + shipping_charges + tax
    discount = min(max(discount, Decimal("0.00")), gross)

    return PricingBreakdown(
        subtotal=subtotal,
        discount=discount,
        shipping_charges=shipping_charges,
        tax=to_money(tax),
        total=gross - discount,
    )
