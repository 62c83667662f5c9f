"""
SQLAlchemy Database Models

Relational schema for the restaurant ordering system:
- Catalog: menus, categories, menu items
- Promotions and their per-order usage records
- Orders, order items (price snapshots) and the append-only status trail
- Users, staff audit log and menu item reviews

Money columns are exact decimals; they are only converted to float in the
response schemas.

Version: 4.0.0
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from bistro.database import Base


def new_id() -> str:
    """Generate a primary key for string-keyed tables."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class Role(str, enum.Enum):
    """Customer plus the fixed staff role set."""
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CHEF = "CHEF"
    WAITER = "WAITER"


STAFF_ROLES = (Role.ADMIN, Role.MANAGER, Role.CHEF, Role.WAITER)
MANAGEMENT_ROLES = (Role.ADMIN, Role.MANAGER)


class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class OrderStatus(str, enum.Enum):
    """Order lifecycle, in forward order, plus the side branches."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OrderType(str, enum.Enum):
    """Order type - Dine-in or Pickup."""
    DINE_IN = "DINE_IN"
    PICKUP = "PICKUP"


class PromotionType(str, enum.Enum):
    PERCENTAGE_DISCOUNT = "PERCENTAGE_DISCOUNT"
    FIXED_AMOUNT_DISCOUNT = "FIXED_AMOUNT_DISCOUNT"
    FREE_ITEM = "FREE_ITEM"
    BUY_ONE_GET_ONE = "BUY_ONE_GET_ONE"


# =============================================================================
# ASSOCIATION TABLES
# =============================================================================

promotion_menu_items = Table(
    "promotion_menu_items",
    Base.metadata,
    Column("promotion_id", String(32), ForeignKey("promotions.id", ondelete="CASCADE"), primary_key=True),
    Column("menu_item_id", String(32), ForeignKey("menu_items.id", ondelete="CASCADE"), primary_key=True),
)

promotion_categories = Table(
    "promotion_categories",
    Base.metadata,
    Column("promotion_id", String(32), ForeignKey("promotions.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", String(32), ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)


# =============================================================================
# USERS
# =============================================================================

class User(Base):
    """Customer or staff account. Credentials live with the auth provider."""
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True)

    role = Column(Enum(Role), default=Role.CUSTOMER, nullable=False, index=True)
    status = Column(Enum(UserStatus), default=UserStatus.ACTIVE, nullable=False, index=True)

    employee_id = Column(String(50), nullable=True, unique=True)
    hire_date = Column(DateTime(timezone=True), nullable=True)
    created_by_id = Column(String(32), ForeignKey("users.id"), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return self.name or self.email

    def __repr__(self):
        return f"<User {self.email} - {self.role.value}>"


class UserAuditLog(Base):
    """Append-only record of user management actions."""
    __tablename__ = "user_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    performed_by_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    details = Column(Text, nullable=True)  # JSON string
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# =============================================================================
# CATALOG
# =============================================================================

class Menu(Base):
    __tablename__ = "menus"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_pickup = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Category(Base):
    __tablename__ = "categories"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class MenuItem(Base):
    """A dish. Belongs to exactly one category and one menu."""
    __tablename__ = "menu_items"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    image = Column(String(500), nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)

    is_vegetarian = Column(Boolean, default=False, nullable=False)
    is_vegan = Column(Boolean, default=False, nullable=False)
    is_gluten_free = Column(Boolean, default=False, nullable=False)
    is_spicy = Column(Boolean, default=False, nullable=False)

    menu_id = Column(String(32), ForeignKey("menus.id", ondelete="RESTRICT"), nullable=False, index=True)
    category_id = Column(String(32), ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    category = relationship("Category", lazy="selectin")
    menu = relationship("Menu", lazy="selectin")

    def __repr__(self):
        return f"<MenuItem {self.name} - {self.price}>"


# =============================================================================
# PROMOTIONS
# =============================================================================

class Promotion(Base):
    __tablename__ = "promotions"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    promotion_type = Column(Enum(PromotionType), nullable=False)
    value = Column(Numeric(10, 2), nullable=False)
    minimum_order_value = Column(Numeric(10, 2), nullable=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    free_item_id = Column(String(32), ForeignKey("menu_items.id", ondelete="SET NULL"), nullable=True)
    coupon_code = Column(String(50), nullable=True, unique=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)
    apply_to_all_items = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    free_item = relationship("MenuItem", lazy="selectin")
    menu_items = relationship("MenuItem", secondary=promotion_menu_items, lazy="selectin")
    categories = relationship("Category", secondary=promotion_categories, lazy="selectin")

    def __repr__(self):
        return f"<Promotion {self.name} - {self.promotion_type.value}>"


class PromotionUsage(Base):
    """One row per redemption. Never mutated."""
    __tablename__ = "promotion_usages"

    id = Column(String(32), primary_key=True, default=new_id)
    promotion_id = Column(String(32), ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(String(32), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, unique=True)

    discount_amount = Column(Numeric(10, 2), nullable=False)
    original_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)

    coupon_code = Column(String(50), nullable=True)
    order_type = Column(Enum(OrderType), nullable=True)
    cart_item_count = Column(Integer, nullable=True)
    is_first_time_use = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    promotion = relationship("Promotion", lazy="selectin")


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Customer order.

    Created in PENDING when the customer checks out; afterwards only the
    lifecycle manager and payment reconciliation mutate it. Orders are never
    deleted, only status-transitioned.
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    total = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    applied_promotion_id = Column(String(32), ForeignKey("promotions.id", ondelete="SET NULL"), nullable=True)

    # =========================================================================
    # STATUS
    # =========================================================================
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    order_type = Column(Enum(OrderType), default=OrderType.PICKUP, nullable=False, index=True)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    payment_method = Column(String(50), nullable=True)
    payment_intent_id = Column(String(100), nullable=True, unique=True)
    charge_id = Column(String(100), nullable=True, unique=True)

    # =========================================================================
    # PICKUP / KITCHEN
    # =========================================================================
    estimated_pickup_time = Column(DateTime(timezone=True), nullable=True)
    completed_time = Column(DateTime(timezone=True), nullable=True)
    order_notes = Column(Text, nullable=True)
    is_notified = Column(Boolean, default=False, nullable=False)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", lazy="selectin")
    applied_promotion = relationship("Promotion", lazy="selectin")
    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    status_updates = relationship(
        "OrderStatusUpdate",
        back_populates="order",
        lazy="selectin",
        order_by="OrderStatusUpdate.id",
        cascade="all, delete-orphan",
    )

    @property
    def short_number(self) -> str:
        return f"#{self.id[-6:]}"

    def __repr__(self):
        return f"<Order {self.short_number} - {self.order_type.value} - {self.status.value}>"


class OrderItem(Base):
    """Line item with the price captured when the order was created."""
    __tablename__ = "order_items"

    id = Column(String(32), primary_key=True, default=new_id)
    order_id = Column(String(32), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(String(32), ForeignKey("menu_items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    special_instructions = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem", lazy="selectin")


class OrderStatusUpdate(Base):
    """Append-only audit trail. The newest row mirrors ``Order.status``."""
    __tablename__ = "order_status_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(Enum(OrderStatus), nullable=False)
    note = Column(Text, nullable=True)
    updated_by_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="status_updates")


# =============================================================================
# REVIEWS
# =============================================================================

class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("user_id", "menu_item_id", name="uq_review_user_item"),)

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    menu_item_id = Column(String(32), ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False, index=True)
    rating = Column(Integer, nullable=False, default=5)
    title = Column(String(200), nullable=True)
    content = Column(Text, nullable=False)
    is_verified = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", lazy="selectin")
