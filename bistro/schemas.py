"""
Pydantic Schemas for Request/Response Validation

Covers:
- Cart quotes and checkout
- Orders, status changes and refunds
- Catalog, promotions, reviews and user management
- Typed payment webhook envelopes

Money travels as Decimal inside the services and is converted to float
only here, at the response boundary.

Version: 4.0.0
"""

import json
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from bistro.models import (
    Order,
    OrderStatus,
    OrderType,
    PaymentStatus,
    PromotionType,
    Role,
    UserStatus,
)
from bistro.services.common import as_utc, money

EMAIL_PATTERN = re.compile(r'^[\w\.+-]+@[\w\.-]+\.\w+$')


def _to_float(value: Optional[Decimal]) -> Optional[float]:
    return float(money(value)) if value is not None else None


# =============================================================================
# AUTH SCHEMAS
# =============================================================================

class TokenRequest(BaseModel):
    """Development sign-in by email."""
    email: str = Field(..., examples=["chef@bistro.example"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: Role


# =============================================================================
# CART / CHECKOUT SCHEMAS
# =============================================================================

class CartItemIn(BaseModel):
    """Single line of the client-held cart."""
    menu_item_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    special_instructions: Optional[str] = Field(None, max_length=500)


class CartQuoteRequest(BaseModel):
    items: List[CartItemIn] = Field(default_factory=list)
    coupon_code: Optional[str] = Field(None, max_length=50)


class QuoteLine(BaseModel):
    menu_item_id: str
    name: str
    category: Optional[str]
    unit_price: float
    quantity: int
    line_total: float
    special_instructions: Optional[str] = None


class PromotionPreview(BaseModel):
    """Outcome of evaluating a coupon against a cart, without redeeming it."""
    promotion_id: Optional[str] = None
    name: Optional[str] = None
    applicable: bool
    reason: Optional[str] = None
    discount: float = 0.0
    final_total: float


class CartQuoteResponse(BaseModel):
    lines: List[QuoteLine]
    item_count: int
    subtotal: float
    discount: float = 0.0
    total: float
    promotion: Optional[PromotionPreview] = None


class CheckoutRequest(BaseModel):
    """Request schema for turning a cart into a pending order."""
    items: List[CartItemIn] = Field(default_factory=list)
    order_type: OrderType = Field(default=OrderType.PICKUP, examples=["PICKUP"])
    order_notes: Optional[str] = Field(None, max_length=1000)
    pickup_time: Optional[datetime] = Field(None, examples=["2026-01-15T18:30:00Z"])
    coupon_code: Optional[str] = Field(None, max_length=50)


class CheckoutResponse(BaseModel):
    """Response after creating the order and its payment intent."""
    success: bool = True
    order_id: str
    order_number: str
    payment_intent_id: Optional[str]
    client_secret: Optional[str]
    subtotal: float
    discount: float
    total: float
    promotion_applied: bool = False
    promotion_message: Optional[str] = None
    estimated_time: str


class PaymentRetryResponse(BaseModel):
    order_id: str
    payment_intent_id: str
    client_secret: Optional[str]
    total: float


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    id: str
    menu_item_id: str
    name: str
    category: Optional[str]
    quantity: int
    price: float
    line_total: float
    special_instructions: Optional[str]


class StatusUpdateResponse(BaseModel):
    status: OrderStatus
    note: Optional[str]
    updated_by_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order, with its lines and audit trail."""
    id: str
    order_number: str
    user_id: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str]
    payment_intent_id: Optional[str]
    order_type: OrderType
    subtotal: float
    discount_amount: float
    total: float
    applied_promotion_id: Optional[str]
    promotion_name: Optional[str]
    estimated_pickup_time: Optional[datetime]
    completed_time: Optional[datetime]
    order_notes: Optional[str]
    is_notified: bool
    created_at: datetime
    updated_at: Optional[datetime]
    items: List[OrderItemResponse]
    status_updates: List[StatusUpdateResponse]

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        subtotal = sum((i.price * i.quantity for i in order.items), Decimal("0"))
        return cls(
            id=order.id,
            order_number=order.short_number,
            user_id=order.user_id,
            customer_name=order.user.display_name if order.user else None,
            customer_email=order.user.email if order.user else None,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            payment_intent_id=order.payment_intent_id,
            order_type=order.order_type,
            subtotal=_to_float(subtotal),
            discount_amount=_to_float(order.discount_amount),
            total=_to_float(order.total),
            applied_promotion_id=order.applied_promotion_id,
            promotion_name=order.applied_promotion.name if order.applied_promotion else None,
            estimated_pickup_time=as_utc(order.estimated_pickup_time),
            completed_time=as_utc(order.completed_time),
            order_notes=order.order_notes,
            is_notified=order.is_notified,
            created_at=as_utc(order.created_at),
            updated_at=as_utc(order.updated_at),
            items=[
                OrderItemResponse(
                    id=i.id,
                    menu_item_id=i.menu_item_id,
                    name=i.menu_item.name if i.menu_item else "Unknown item",
                    category=(
                        i.menu_item.category.name
                        if i.menu_item and i.menu_item.category else None
                    ),
                    quantity=i.quantity,
                    price=_to_float(i.price),
                    line_total=_to_float(i.price * i.quantity),
                    special_instructions=i.special_instructions,
                )
                for i in order.items
            ],
            status_updates=[
                StatusUpdateResponse(
                    status=u.status,
                    note=u.note,
                    updated_by_id=u.updated_by_id,
                    created_at=as_utc(u.created_at),
                )
                for u in order.status_updates
            ],
        )


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    page: int
    page_size: int
    orders: List[OrderResponse]


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(
        None,
        pattern="^(duplicate|fraudulent|requested_by_customer)$",
    )


class DashboardStatsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    today_orders: int
    today_revenue: float


# =============================================================================
# CATALOG SCHEMAS
# =============================================================================

class MenuCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: bool = True
    is_pickup: bool = True


class MenuUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    is_pickup: Optional[bool] = None


class MenuResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    is_active: bool
    is_pickup: bool

    class Config:
        from_attributes = True


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]

    class Config:
        from_attributes = True


class MenuItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150, examples=["Bibimbap"])
    description: Optional[str] = None
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, examples=["14.99"])
    image: Optional[str] = Field(None, max_length=500)
    is_available: bool = True
    is_vegetarian: bool = False
    is_vegan: bool = False
    is_gluten_free: bool = False
    is_spicy: bool = False
    menu_id: str
    category_id: str


class MenuItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    image: Optional[str] = Field(None, max_length=500)
    is_available: Optional[bool] = None
    is_vegetarian: Optional[bool] = None
    is_vegan: Optional[bool] = None
    is_gluten_free: Optional[bool] = None
    is_spicy: Optional[bool] = None
    menu_id: Optional[str] = None
    category_id: Optional[str] = None


class MenuItemResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    price: float
    image: Optional[str]
    is_available: bool
    is_vegetarian: bool
    is_vegan: bool
    is_gluten_free: bool
    is_spicy: bool
    menu_id: str
    category_id: str
    category_name: Optional[str] = None

    @classmethod
    def from_item(cls, item) -> "MenuItemResponse":
        return cls(
            id=item.id,
            name=item.name,
            description=item.description,
            price=_to_float(item.price),
            image=item.image,
            is_available=item.is_available,
            is_vegetarian=item.is_vegetarian,
            is_vegan=item.is_vegan,
            is_gluten_free=item.is_gluten_free,
            is_spicy=item.is_spicy,
            menu_id=item.menu_id,
            category_id=item.category_id,
            category_name=item.category.name if item.category else None,
        )


class AvailabilityRequest(BaseModel):
    is_available: bool


# =============================================================================
# PROMOTION SCHEMAS
# =============================================================================

class PromotionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    promotion_type: PromotionType
    value: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    minimum_order_value: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    free_item_id: Optional[str] = None
    coupon_code: Optional[str] = Field(None, max_length=50)
    usage_limit: Optional[int] = Field(None, ge=1)
    apply_to_all_items: bool = False
    menu_item_ids: List[str] = Field(default_factory=list)
    category_ids: List[str] = Field(default_factory=list)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip().upper()


class PromotionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = None
    value: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    minimum_order_value: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    free_item_id: Optional[str] = None
    coupon_code: Optional[str] = Field(None, max_length=50)
    usage_limit: Optional[int] = Field(None, ge=1)
    apply_to_all_items: Optional[bool] = None
    menu_item_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip().upper()


class PromotionResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    promotion_type: PromotionType
    value: float
    minimum_order_value: Optional[float]
    start_date: datetime
    end_date: datetime
    is_active: bool
    free_item_id: Optional[str]
    coupon_code: Optional[str]
    usage_limit: Optional[int]
    usage_count: int
    apply_to_all_items: bool
    menu_item_ids: List[str]
    category_ids: List[str]

    @classmethod
    def from_promotion(cls, promotion) -> "PromotionResponse":
        return cls(
            id=promotion.id,
            name=promotion.name,
            description=promotion.description,
            promotion_type=promotion.promotion_type,
            value=_to_float(promotion.value),
            minimum_order_value=_to_float(promotion.minimum_order_value),
            start_date=as_utc(promotion.start_date),
            end_date=as_utc(promotion.end_date),
            is_active=promotion.is_active,
            free_item_id=promotion.free_item_id,
            coupon_code=promotion.coupon_code,
            usage_limit=promotion.usage_limit,
            usage_count=promotion.usage_count,
            apply_to_all_items=promotion.apply_to_all_items,
            menu_item_ids=[i.id for i in promotion.menu_items],
            category_ids=[c.id for c in promotion.categories],
        )


class CouponValidateRequest(BaseModel):
    coupon_code: str = Field(..., min_length=1, max_length=50)
    items: List[CartItemIn] = Field(default_factory=list)


# =============================================================================
# REVIEW SCHEMAS
# =============================================================================

class ReviewCreate(BaseModel):
    menu_item_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)


class ReviewResponse(BaseModel):
    id: str
    user_id: str
    author: Optional[str]
    menu_item_id: str
    rating: int
    title: Optional[str]
    content: str
    is_verified: bool
    created_at: datetime
    updated_at: Optional[datetime]

    @classmethod
    def from_review(cls, review) -> "ReviewResponse":
        return cls(
            id=review.id,
            user_id=review.user_id,
            author=review.user.display_name if review.user else None,
            menu_item_id=review.menu_item_id,
            rating=review.rating,
            title=review.title,
            content=review.content,
            is_verified=review.is_verified,
            created_at=as_utc(review.created_at),
            updated_at=as_utc(review.updated_at),
        )


class ReviewListResponse(BaseModel):
    menu_item_id: str
    count: int
    average_rating: Optional[float]
    reviews: List[ReviewResponse]


# =============================================================================
# USER MANAGEMENT SCHEMAS
# =============================================================================

class UserCreate(BaseModel):
    email: str = Field(..., max_length=255)
    name: Optional[str] = Field(None, max_length=200)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    role: Role = Role.WAITER
    employee_id: Optional[str] = Field(None, max_length=50)
    hire_date: Optional[datetime] = None
    send_invitation: bool = True

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    employee_id: Optional[str] = Field(None, max_length=50)
    hire_date: Optional[datetime] = None


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    phone: Optional[str]
    role: Role
    status: UserStatus
    employee_id: Optional[str]
    hire_date: Optional[datetime]
    last_login: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class UserListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    users: List[UserResponse]


class UserStatsResponse(BaseModel):
    total_users: int
    active_users: int
    inactive_users: int
    suspended_users: int
    staff_members: int
    customers: int
    by_role: dict[str, int]


class AuditLogResponse(BaseModel):
    id: int
    user_id: str
    action: str
    performed_by_id: str
    details: Optional[dict[str, Any]]
    created_at: datetime

    @classmethod
    def from_entry(cls, entry) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            performed_by_id=entry.performed_by_id,
            details=json.loads(entry.details) if entry.details else None,
            created_at=as_utc(entry.created_at),
        )


# =============================================================================
# PAYMENT WEBHOOK SCHEMAS
# =============================================================================

class WebhookEventData(BaseModel):
    object: dict[str, Any]


class WebhookEvent(BaseModel):
    """Envelope of a verified payment provider event."""
    id: Optional[str] = None
    type: str
    data: WebhookEventData


class ChargeObject(BaseModel):
    id: str
    amount: int = 0
    payment_intent: Optional[str] = None
    payment_method_details: Optional[dict[str, Any]] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def payment_method(self) -> str:
        if self.payment_method_details and self.payment_method_details.get("type"):
            return self.payment_method_details["type"]
        return "card"


class PaymentIntentObject(BaseModel):
    id: str
    amount: int = 0
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[dict[str, Any]] = None

    @property
    def failure_message(self) -> str:
        if self.last_payment_error and self.last_payment_error.get("message"):
            return self.last_payment_error["message"]
        return "Unknown error"


class CheckoutSessionObject(BaseModel):
    id: str
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class MetadataItem(BaseModel):
    """One entry of the JSON item list embedded in payment metadata."""
    menuItemId: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    specialInstructions: Optional[str] = None


class ReconstructionMetadata(BaseModel):
    """Metadata needed to rebuild an order from a charge alone."""
    userId: str = Field(..., min_length=1)
    # Each entry is validated separately against MetadataItem
    items: List[Any] = Field(..., min_length=1)
    orderType: Optional[str] = None
    pickupTime: Optional[str] = None
    orderNotes: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def decode_items(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                raise ValueError("items is not valid JSON")
        return v


# =============================================================================
# GENERIC RESPONSES
# =============================================================================

class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    timestamp: datetime
