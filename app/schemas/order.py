"""订单API的Pydantic模型（请求校验与响应格式）"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.order import (
    CancelledBy,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundSource,
    RefundStatus,
    ReturnStatus,
    ReturnType,
)
from app.schemas.base import BaseResponse, Pagination

MOBILE_PATTERN = r"^[6-9]\d{9}$"
PINCODE_PATTERN = r"^\d{6}$"
COLOR_CODE_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"

VariantSize = Literal["XS", "S", "M", "L", "XL", "XXL", "XXXL", "Free Size"]
AddressType = Literal["Home", "Work", "Other"]

BULK_STATUSES = {
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.CANCELLED,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ==================== 请求模型 ====================

class VariantSelection(BaseModel):
    """规格选择"""
    size: Optional[VariantSize] = None
    color: Optional[str] = Field(None, max_length=50)
    color_code: Optional[str] = Field(None, pattern=COLOR_CODE_PATTERN)
    sku: Optional[str] = Field(None, max_length=100, examples=["TS-RED-M"])


class OrderItemRequest(BaseModel):
    product: int = Field(..., gt=0, description="商品ID", examples=[1])
    variant: Optional[VariantSelection] = None
    quantity: int = Field(..., ge=1, le=10, description="购买数量", examples=[2])
    price: Optional[Decimal] = Field(None, ge=0, description="客户端单价（可选）")


class ShippingAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., min_length=3, max_length=100)
    mobile: str = Field(..., pattern=MOBILE_PATTERN, examples=["9876543210"])
    alternate_mobile: Optional[str] = None
    address_line1: str = Field(..., min_length=5, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    pincode: str = Field(..., pattern=PINCODE_PATTERN, examples=["560001"])
    country: str = Field("India", max_length=100)
    address_type: AddressType = "Home"

    @field_validator("alternate_mobile")
    @classmethod
    def check_alternate_mobile(cls, v):
        if v in (None, ""):
            return None
        if not re.match(MOBILE_PATTERN, v):
            raise ValueError("备用手机号格式不正确")
        return v


class BillingAddress(BaseModel):
    """账单地址，省略时使用收货地址"""
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(None, min_length=3, max_length=100)
    mobile: Optional[str] = Field(None, pattern=MOBILE_PATTERN)
    address_line1: Optional[str] = Field(None, min_length=5, max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, min_length=2, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=100)
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    country: Optional[str] = Field(None, max_length=100)


class PaymentRequest(BaseModel):
    method: PaymentMethod
    transaction_id: Optional[str] = Field(None, max_length=100)
    payment_gateway: Optional[str] = Field(None, max_length=50)

    @model_validator(mode="after")
    def check_cod_transaction(self):
        if self.method == PaymentMethod.COD and self.transaction_id:
            raise ValueError("货到付款订单不能携带交易号")
        return self


class CouponRequest(BaseModel):
    code: Optional[str] = Field(None, max_length=50)

    @field_validator("code")
    @classmethod
    def upper(cls, v):
        return v.strip().upper() if v else v


class CreateOrderRequest(BaseModel):
    """创建订单请求"""
    items: List[OrderItemRequest] = Field(..., min_length=1, max_length=20)
    shipping_address: ShippingAddress
    billing_address: Optional[BillingAddress] = None
    payment: PaymentRequest
    coupon: Optional[CouponRequest] = None
    customer_notes: Optional[str] = Field(None, max_length=500)


class CancelOrderRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=500)
    additional_comments: Optional[str] = Field(None, max_length=500)


class ReturnOrderRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=500)
    return_type: ReturnType = ReturnType.REFUND
    additional_comments: Optional[str] = Field(None, max_length=500)


class ShippingInfo(BaseModel):
    """物流信息（状态变更时附带）"""
    courier: Optional[str] = Field(None, min_length=2, max_length=100)
    tracking_number: Optional[str] = Field(None, min_length=5, max_length=100)
    tracking_url: Optional[str] = Field(None, max_length=500)
    estimated_delivery: Optional[datetime] = None

    @field_validator("tracking_url")
    @classmethod
    def check_url(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("物流链接必须是 http(s) 地址")
        return v

    @field_validator("estimated_delivery")
    @classmethod
    def check_future(cls, v):
        if v is not None and _aware(v) <= _now():
            raise ValueError("预计送达时间必须晚于当前时间")
        return v


class UpdateShippingRequest(ShippingInfo):
    courier: str = Field(..., min_length=2, max_length=100)
    tracking_number: str = Field(..., min_length=5, max_length=100)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    comment: Optional[str] = Field(None, max_length=500)
    shipping: Optional[ShippingInfo] = None


class UpdateReturnStatusRequest(BaseModel):
    status: ReturnStatus
    comment: Optional[str] = Field(None, max_length=500)
    refund_amount: Optional[Decimal] = Field(None, ge=0)

    @field_validator("status")
    @classmethod
    def not_requested(cls, v):
        if v == ReturnStatus.REQUESTED:
            raise ValueError("不能把退货状态改回 Requested")
        return v


class UpdatePaymentStatusRequest(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = Field(None, max_length=100)
    paid_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = Field(None, ge=0)

    @field_validator("paid_at")
    @classmethod
    def not_in_future(cls, v):
        if v is not None and _aware(v) > _now():
            raise ValueError("支付时间不能晚于当前时间")
        return v

    @model_validator(mode="after")
    def check_refund_amount(self):
        refunding = self.status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)
        if refunding and self.refund_amount is None:
            raise ValueError("退款状态必须提供 refund_amount")
        if not refunding and self.refund_amount is not None:
            raise ValueError("只有退款状态可以提供 refund_amount")
        return self


class AdminNotesRequest(BaseModel):
    notes: str = Field(..., min_length=5, max_length=1000)


class BulkUpdateOrdersRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=1, max_length=50)
    status: OrderStatus
    comment: Optional[str] = Field(None, max_length=500)

    @field_validator("status")
    @classmethod
    def bulk_status(cls, v):
        if v not in BULK_STATUSES:
            raise ValueError("批量操作只支持 Confirmed / Processing / Shipped / Cancelled")
        return v


class OrderListQuery(BaseModel):
    """订单列表查询参数"""
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, ge=0)
    search: Optional[str] = Field(None, max_length=100)
    user_id: Optional[int] = Field(None, gt=0)
    sort_by: Literal["created_at", "updated_at", "total", "status", "order_number"] = "created_at"
    sort_order: Literal["asc", "desc", "1", "-1"] = "desc"

    @model_validator(mode="after")
    def check_ranges(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date 不能早于 start_date")
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.max_amount < self.min_amount
        ):
            raise ValueError("max_amount 不能小于 min_amount")
        return self


class StatisticsQuery(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    group_by: Literal["day", "week", "month", "year"] = "day"

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date 不能早于 start_date")
        return self


# ==================== 响应模型 ====================

class OrmModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class VariantInfo(OrmModel):
    size: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None


class OrderItemResponse(OrmModel):
    id: int
    product_id: int
    product_name: str
    product_image: Optional[str] = None
    variant: Optional[VariantInfo] = None
    quantity: int
    price: float
    discount: int
    subtotal: float


class PricingInfo(OrmModel):
    subtotal: float
    discount: float
    shipping_charges: float
    tax: float
    total: float


class PaymentInfo(OrmModel):
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_gateway: Optional[str] = None


class ShippingDetails(OrmModel):
    courier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipped_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class CancellationInfo(OrmModel):
    reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancelled_at: Optional[datetime] = None


class ReturnInfo(OrmModel):
    reason: Optional[str] = None
    return_type: Optional[ReturnType] = None
    status: ReturnStatus
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    comment: Optional[str] = None


class RefundInfo(OrmModel):
    source: Optional[RefundSource] = None
    status: RefundStatus
    amount: Optional[float] = None
    refunded_at: Optional[datetime] = None


class CouponInfo(OrmModel):
    code: Optional[str] = None
    discount_amount: float = 0


class StatusHistoryEntry(OrmModel):
    status: OrderStatus
    comment: Optional[str] = None
    updated_by: Optional[int] = None
    timestamp: datetime


class OrderResponse(OrmModel):
    """订单详情"""
    id: int
    order_number: str
    user_id: int
    items: List[OrderItemResponse] = []
    pricing: PricingInfo
    shipping_address: dict
    billing_address: Optional[dict] = None
    payment: PaymentInfo
    status: OrderStatus
    status_history: List[StatusHistoryEntry] = []
    shipping: ShippingDetails
    cancellation: Optional[CancellationInfo] = None
    return_request: Optional[ReturnInfo] = Field(
        None,
        validation_alias=AliasChoices("return_request", "return"),
        serialization_alias="return",
    )
    refund: Optional[RefundInfo] = None
    coupon: CouponInfo
    customer_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    total_items: int
    can_cancel: bool
    created_at: datetime
    updated_at: datetime


class TrackingInfo(OrmModel):
    """物流跟踪（公开接口，不含地址与支付信息）"""
    order_number: str
    status: OrderStatus
    status_history: List[StatusHistoryEntry] = []
    shipping: ShippingDetails
    ordered_at: datetime = Field(..., validation_alias=AliasChoices("ordered_at", "created_at"))


class BulkUpdateFailure(BaseModel):
    order_id: int
    error_code: str
    message: str


class BulkUpdateResult(BaseModel):
    matched: int
    modified: int
    failed: List[BulkUpdateFailure] = []


class OrderStatistics(BaseModel):
    total_orders: int
    total_revenue: float
    today_orders: int
    today_revenue: float
    average_order_value: float
    status_breakdown: dict
    payment_method_breakdown: dict
    payment_status_breakdown: dict


class RevenuePoint(BaseModel):
    period: str
    revenue: float
    orders: int
    average_order_value: float


# ==================== 响应包装 ====================

class OrderEnvelope(BaseResponse):
    data: OrderResponse


class OrderListEnvelope(BaseResponse):
    data: List[OrderResponse]
    pagination: Pagination


class TrackingEnvelope(BaseResponse):
    data: TrackingInfo


class BulkUpdateEnvelope(BaseResponse):
    data: BulkUpdateResult


class StatisticsEnvelope(BaseResponse):
    data: OrderStatistics


class RevenueEnvelope(BaseResponse):
    data: List[RevenuePoint]
