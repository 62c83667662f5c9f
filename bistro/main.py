"""
FastAPI Application Entry Point

Restaurant Ordering Backend - Hybrid Architecture
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - /api/menus, /api/categories, /api/menu-items: Catalog
    - POST /api/cart/quote: Price a cart and preview a coupon
    - POST /api/checkout: Create order + payment intent
    - /api/orders: Order board, status changes, cancel, refund
    - POST /webhook/stripe: Payment provider events
    - /api/promotions: Promotion admin and coupon validation
    - /api/reports, /api/dashboard/stats: Analytics
    - /api/orders/{id}/receipt, /kitchen-ticket: Printable HTML
    - /api/reviews, /api/users: Reviews and staff management
    - GET /health: System health check

Version: 4.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header
from fastapi.responses import JSONResponse, HTMLResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from bistro.core.config import get_settings, setup_logging
from bistro.core.errors import BistroError, NotFoundError, ValidationError
from bistro.core.security import (
    RequestContext,
    create_access_token,
    get_current_context,
)
from bistro.database import get_db, init_db, engine
from bistro.models import OrderStatus, OrderType, Role, User, UserStatus, utcnow
from bistro.schemas import (
    AuditLogResponse,
    AvailabilityRequest,
    CartQuoteRequest,
    CartQuoteResponse,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    CheckoutRequest,
    CheckoutResponse,
    CouponValidateRequest,
    DashboardStatsResponse,
    ErrorResponse,
    HealthResponse,
    MenuCreate,
    MenuItemCreate,
    MenuItemResponse,
    MenuItemUpdate,
    MenuResponse,
    MenuUpdate,
    MessageResponse,
    OrderListResponse,
    OrderResponse,
    PaymentRetryResponse,
    PromotionCreate,
    PromotionResponse,
    PromotionUpdate,
    RefundRequest,
    ReviewCreate,
    ReviewListResponse,
    ReviewResponse,
    StatusUpdateRequest,
    TokenRequest,
    TokenResponse,
    UserCreate,
    UserListResponse,
    UserResponse,
    UserStatsResponse,
    UserUpdate,
)
from bistro.services import (
    cart,
    catalog,
    checkout as checkout_service,
    orders,
    promotions,
    receipts,
    reconciliation,
    reporting,
    reviews,
    users,
)
from bistro.services.excel_manager import ledger_row
from bistro.services.notifications import BaseNotificationService, get_notification_service
from bistro.services.orders import OrderChange
from bistro.services.payment import BasePaymentService, get_payment_service
from bistro.tasks import export_order_to_ledger

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    # Log service configuration
    payment_service = get_payment_service()
    notification_service = get_notification_service()
    logger.info(f"✅ Payment Service: {payment_service.provider_name}")
    logger.info(f"✅ Notification Service: {notification_service.provider_name}")

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Restaurant ordering backend: catalog, cart, checkout, promotions, "
        "kitchen workflow and payment reconciliation."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(BistroError)
async def bistro_error_handler(request: Request, exc: BistroError) -> JSONResponse:
    """Expected failures: the message goes back to the caller verbatim."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error} on {request.url.path}: {exc.message} ({exc.detail})")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, detail=exc.detail).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# SIDE EFFECTS
# =============================================================================

async def dispatch_side_effects(
    db: AsyncSession,
    change: Optional[OrderChange],
    notifications: BaseNotificationService,
) -> None:
    """
    Queue the ledger export and send the "ready" notice for a change.

    Runs after the change is committed; a failure here is logged and never
    undoes or fails the request that caused it.
    """
    if change is None or not (change.queues_ledger_export or change.notify_customer):
        return

    try:
        order = await orders.load_order(db, change.order_id)
    except Exception:
        logger.exception(f"Could not load order {change.order_id} for side effects")
        return

    if change.queues_ledger_export:
        try:
            export_order_to_ledger.delay(ledger_row(order))
            logger.info(f"Ledger export queued for order {order.id}")
        except Exception as e:
            logger.error(f"Could not queue ledger export for order {order.id}: {e}")

    if change.notify_customer:
        try:
            result = await notifications.send_order_ready(
                order_number=order.short_number,
                customer_name=order.user.display_name if order.user else "there",
                customer_email=order.user.email if order.user else None,
                customer_phone=order.user.phone if order.user else None,
                order_type=order.order_type.value,
            )
        except Exception:
            logger.exception(f"Ready notification crashed for order {order.id}")
            return
        if not result.success:
            logger.warning(f"Ready notification failed for order {order.id}: {result.error_message}")


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    payment_service: BasePaymentService = Depends(get_payment_service),
    notifications: BaseNotificationService = Depends(get_notification_service),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.count(User.id)))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_status = "healthy" if await payment_service.health_check() else "unhealthy"
    notification_status = "healthy" if await notifications.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# AUTH (DEVELOPMENT)
# =============================================================================

@app.post(
    "/auth/token",
    response_model=TokenResponse,
    tags=["Auth"],
    summary="Issue Access Token (Development)",
)
async def issue_token(
    data: TokenRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """
    Mint a token for an existing user.

    Stands in for the authentication provider on a developer machine.
    """
    if not settings.is_development:
        raise NotFoundError("Not found")

    user = await db.scalar(select(User).where(User.email == data.email.strip().lower()))
    if user is None:
        raise NotFoundError("User not found")
    if user.status != UserStatus.ACTIVE:
        raise ValidationError("Account is not active")

    user.last_login = utcnow()
    await db.commit()

    return TokenResponse(
        access_token=create_access_token(user.id),
        user_id=user.id,
        role=user.role,
    )


# =============================================================================
# CATALOG ENDPOINTS
# =============================================================================

@app.get("/api/menus", response_model=list[MenuResponse], tags=["Catalog"])
async def list_menus(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> list[MenuResponse]:
    menus = await catalog.list_menus(db, active_only=active_only)
    return [MenuResponse.model_validate(m) for m in menus]


@app.post("/api/menus", response_model=MenuResponse, status_code=201, tags=["Catalog"])
async def create_menu(
    data: MenuCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MenuResponse:
    return MenuResponse.model_validate(await catalog.create_menu(db, ctx, data))


@app.patch("/api/menus/{menu_id}", response_model=MenuResponse, tags=["Catalog"])
async def update_menu(
    menu_id: str,
    data: MenuUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MenuResponse:
    return MenuResponse.model_validate(await catalog.update_menu(db, ctx, menu_id, data))


@app.delete("/api/menus/{menu_id}", response_model=MessageResponse, tags=["Catalog"])
async def delete_menu(
    menu_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MessageResponse:
    await catalog.delete_menu(db, ctx, menu_id)
    return MessageResponse(message="Menu deleted")


@app.get("/api/categories", response_model=list[CategoryResponse], tags=["Catalog"])
async def list_categories(db: AsyncSession = Depends(get_db)) -> list[CategoryResponse]:
    return [CategoryResponse.model_validate(c) for c in await catalog.list_categories(db)]


@app.post("/api/categories", response_model=CategoryResponse, status_code=201, tags=["Catalog"])
async def create_category(
    data: CategoryCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> CategoryResponse:
    return CategoryResponse.model_validate(await catalog.create_category(db, ctx, data))


@app.patch("/api/categories/{category_id}", response_model=CategoryResponse, tags=["Catalog"])
async def update_category(
    category_id: str,
    data: CategoryUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> CategoryResponse:
    category = await catalog.update_category(db, ctx, category_id, data)
    return CategoryResponse.model_validate(category)


@app.delete("/api/categories/{category_id}", response_model=MessageResponse, tags=["Catalog"])
async def delete_category(
    category_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MessageResponse:
    await catalog.delete_category(db, ctx, category_id)
    return MessageResponse(message="Category deleted")


@app.get("/api/menu-items", response_model=list[MenuItemResponse], tags=["Catalog"])
async def list_menu_items(
    category_id: Optional[str] = Query(None),
    menu_id: Optional[str] = Query(None),
    available_only: bool = Query(False),
    vegetarian: Optional[bool] = Query(None),
    vegan: Optional[bool] = Query(None),
    gluten_free: Optional[bool] = Query(None),
    spicy: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    db: AsyncSession = Depends(get_db),
) -> list[MenuItemResponse]:
    items = await catalog.list_menu_items(
        db,
        category_id=category_id,
        menu_id=menu_id,
        available_only=available_only,
        vegetarian=vegetarian,
        vegan=vegan,
        gluten_free=gluten_free,
        spicy=spicy,
        search=search,
    )
    return [MenuItemResponse.from_item(i) for i in items]


@app.get("/api/menu-items/{item_id}", response_model=MenuItemResponse, tags=["Catalog"])
async def get_menu_item(item_id: str, db: AsyncSession = Depends(get_db)) -> MenuItemResponse:
    return MenuItemResponse.from_item(await catalog.get_menu_item(db, item_id))


@app.post("/api/menu-items", response_model=MenuItemResponse, status_code=201, tags=["Catalog"])
async def create_menu_item(
    data: MenuItemCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MenuItemResponse:
    return MenuItemResponse.from_item(await catalog.create_menu_item(db, ctx, data))


@app.patch("/api/menu-items/{item_id}", response_model=MenuItemResponse, tags=["Catalog"])
async def update_menu_item(
    item_id: str,
    data: MenuItemUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MenuItemResponse:
    return MenuItemResponse.from_item(await catalog.update_menu_item(db, ctx, item_id, data))


@app.patch(
    "/api/menu-items/{item_id}/availability",
    response_model=MenuItemResponse,
    tags=["Catalog"],
)
async def set_menu_item_availability(
    item_id: str,
    data: AvailabilityRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MenuItemResponse:
    item = await catalog.set_availability(db, ctx, item_id, data.is_available)
    return MenuItemResponse.from_item(item)


@app.delete("/api/menu-items/{item_id}", response_model=MessageResponse, tags=["Catalog"])
async def delete_menu_item(
    item_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MessageResponse:
    await catalog.delete_menu_item(db, ctx, item_id)
    return MessageResponse(message="Menu item deleted")


# =============================================================================
# CART & CHECKOUT ENDPOINTS
# =============================================================================

@app.post("/api/cart/quote", response_model=CartQuoteResponse, tags=["Checkout"])
async def quote_cart(
    data: CartQuoteRequest,
    db: AsyncSession = Depends(get_db),
) -> CartQuoteResponse:
    """Price a cart at current catalog prices, with an optional coupon preview."""
    return await cart.quote(db, data.items, data.coupon_code)


@app.post(
    "/api/checkout",
    response_model=CheckoutResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Checkout"],
    summary="Create Order and Payment Intent",
)
async def checkout(
    data: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
    payment_service: BasePaymentService = Depends(get_payment_service),
    notifications: BaseNotificationService = Depends(get_notification_service),
) -> CheckoutResponse:
    """
    Turn the cart into a PENDING order and open a payment intent.

    The client completes payment with ``client_secret``; the order is
    confirmed when the provider's webhook arrives.
    """
    logger.info(f"Checkout for {ctx.user_id}: {len(data.items)} line(s)")
    response, change = await checkout_service.checkout(db, ctx, data, payment_service)
    await dispatch_side_effects(db, change, notifications)
    return response


@app.post(
    "/api/orders/{order_id}/pay",
    response_model=PaymentRetryResponse,
    tags=["Checkout"],
    summary="Retry Payment",
)
async def retry_payment(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> PaymentRetryResponse:
    return await checkout_service.retry_payment(db, ctx, order_id, payment_service)


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.get("/api/orders/mine", response_model=list[OrderResponse], tags=["Orders"])
async def my_orders(
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> list[OrderResponse]:
    return [OrderResponse.from_order(o) for o in await orders.list_user_orders(db, ctx)]


@app.get(
    "/api/orders/by-intent/{payment_intent_id}",
    response_model=OrderResponse,
    tags=["Orders"],
)
async def get_order_by_intent(
    payment_intent_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> OrderResponse:
    """Look up an order from the payment confirmation page."""
    order = await orders.get_order_by_payment_intent(db, ctx, payment_intent_id)
    return OrderResponse.from_order(order)


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    order_type: Optional[OrderType] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> OrderListResponse:
    """Staff order board with filters, newest first."""
    total, found = await orders.list_orders(
        db,
        ctx,
        status=status,
        order_type=order_type,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        page_size=page_size,
    )
    return OrderListResponse(
        total=total,
        page=page,
        page_size=page_size,
        orders=[OrderResponse.from_order(o) for o in found],
    )


@app.get("/api/orders/{order_id}", response_model=OrderResponse, tags=["Orders"])
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.from_order(await orders.get_order(db, ctx, order_id))


@app.patch("/api/orders/{order_id}/status", response_model=OrderResponse, tags=["Orders"])
async def update_order_status(
    order_id: str,
    data: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
    notifications: BaseNotificationService = Depends(get_notification_service),
) -> OrderResponse:
    change = await orders.update_status(db, ctx, order_id, data.status, data.note)
    await dispatch_side_effects(db, change, notifications)
    return OrderResponse.from_order(await orders.load_order(db, order_id))


@app.post("/api/orders/{order_id}/cancel", response_model=OrderResponse, tags=["Orders"])
async def cancel_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> OrderResponse:
    await orders.cancel(db, ctx, order_id)
    return OrderResponse.from_order(await orders.load_order(db, order_id))


@app.post("/api/orders/{order_id}/refund", response_model=OrderResponse, tags=["Orders"])
async def refund_order(
    order_id: str,
    data: RefundRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> OrderResponse:
    await orders.refund(db, ctx, order_id, payment_service, reason=data.reason)
    return OrderResponse.from_order(await orders.load_order(db, order_id))


@app.get(
    "/api/orders/{order_id}/receipt",
    response_class=HTMLResponse,
    tags=["Printing"],
)
async def order_receipt(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> HTMLResponse:
    """Self-printing customer receipt."""
    return HTMLResponse(await receipts.render_receipt(db, ctx, order_id))


@app.get(
    "/api/orders/{order_id}/kitchen-ticket",
    response_class=HTMLResponse,
    tags=["Printing"],
)
async def order_kitchen_ticket(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> HTMLResponse:
    """Self-printing kitchen ticket, without prices."""
    return HTMLResponse(await receipts.render_kitchen_ticket(db, ctx, order_id))


# =============================================================================
# PAYMENT WEBHOOK
# =============================================================================

@app.post(
    "/webhook/stripe",
    tags=["Payment Webhook"],
    summary="Stripe Webhook Endpoint",
    responses={400: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payment_service: BasePaymentService = Depends(get_payment_service),
    notifications: BaseNotificationService = Depends(get_notification_service),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
) -> dict[str, Any]:
    """
    Handle payment events from Stripe.

    Unsigned or tampered requests get 400. Anything that passes
    verification is acknowledged with 200, even when processing fails,
    so the provider does not redeliver an event that cannot succeed.

    Configure this URL in your Stripe dashboard:
        https://your-domain.com/webhook/stripe
    """
    body = await request.body()

    event = await payment_service.verify_webhook(body, stripe_signature)
    if event is None:
        raise ValidationError("Invalid webhook signature")

    logger.info(f"Stripe webhook received: {event.get('type', 'unknown')}")

    outcome = await reconciliation.handle_event(db, event)
    await dispatch_side_effects(db, outcome.change, notifications)
    return outcome.to_response()


# =============================================================================
# PROMOTION ENDPOINTS
# =============================================================================

@app.get("/api/promotions", response_model=list[PromotionResponse], tags=["Promotions"])
async def list_promotions(
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_db),
) -> list[PromotionResponse]:
    found = await promotions.list_promotions(db, active_only=active_only)
    return [PromotionResponse.from_promotion(p) for p in found]


@app.post("/api/promotions/validate", response_model=CartQuoteResponse, tags=["Promotions"])
async def validate_coupon(
    data: CouponValidateRequest,
    db: AsyncSession = Depends(get_db),
) -> CartQuoteResponse:
    """Preview a coupon against a cart without redeeming it."""
    return await cart.quote(db, data.items, data.coupon_code)


@app.get("/api/promotions/{promotion_id}", response_model=PromotionResponse, tags=["Promotions"])
async def get_promotion(
    promotion_id: str,
    db: AsyncSession = Depends(get_db),
) -> PromotionResponse:
    return PromotionResponse.from_promotion(await promotions.get_promotion(db, promotion_id))


@app.post(
    "/api/promotions",
    response_model=PromotionResponse,
    status_code=201,
    tags=["Promotions"],
)
async def create_promotion(
    data: PromotionCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> PromotionResponse:
    return PromotionResponse.from_promotion(await promotions.create_promotion(db, ctx, data))


@app.patch("/api/promotions/{promotion_id}", response_model=PromotionResponse, tags=["Promotions"])
async def update_promotion(
    promotion_id: str,
    data: PromotionUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> PromotionResponse:
    promotion = await promotions.update_promotion(db, ctx, promotion_id, data)
    return PromotionResponse.from_promotion(promotion)


@app.delete("/api/promotions/{promotion_id}", response_model=MessageResponse, tags=["Promotions"])
async def delete_promotion(
    promotion_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MessageResponse:
    await promotions.delete_promotion(db, ctx, promotion_id)
    return MessageResponse(message="Promotion deleted")


# =============================================================================
# REPORTING ENDPOINTS
# =============================================================================

@app.get("/api/dashboard/stats", response_model=DashboardStatsResponse, tags=["Reports"])
async def dashboard_stats(
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> DashboardStatsResponse:
    """Headline counters, polled by the staff dashboard."""
    return await reporting.dashboard_stats(db, ctx)


@app.get("/api/reports/revenue", tags=["Reports"])
async def revenue_report(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> dict[str, Any]:
    return await reporting.revenue_report(db, ctx, start, end)


@app.get("/api/reports/popular-items", tags=["Reports"])
async def popular_items_report(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> list[dict[str, Any]]:
    return await reporting.popular_items(db, ctx, start, end, limit=limit)


@app.get("/api/reports/completion", tags=["Reports"])
async def completion_report(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> dict[str, Any]:
    return await reporting.completion_metrics(db, ctx, start, end)


@app.get("/api/reports/customers", tags=["Reports"])
async def customer_report(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> dict[str, Any]:
    return await reporting.customer_segments(db, ctx, start, end)


@app.get("/api/reports/promotions", tags=["Reports"])
async def promotion_report(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> list[dict[str, Any]]:
    return await reporting.promotion_performance(db, ctx, start, end)


# =============================================================================
# REVIEW ENDPOINTS
# =============================================================================

@app.get(
    "/api/menu-items/{item_id}/reviews",
    response_model=ReviewListResponse,
    tags=["Reviews"],
)
async def list_item_reviews(
    item_id: str,
    db: AsyncSession = Depends(get_db),
) -> ReviewListResponse:
    found, average = await reviews.list_reviews(db, item_id)
    return ReviewListResponse(
        menu_item_id=item_id,
        count=len(found),
        average_rating=average,
        reviews=[ReviewResponse.from_review(r) for r in found],
    )


@app.post("/api/reviews", response_model=ReviewResponse, tags=["Reviews"])
async def submit_review(
    data: ReviewCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> ReviewResponse:
    """Create or replace the caller's review of a dish they have bought."""
    return ReviewResponse.from_review(await reviews.upsert_review(db, ctx, data))


@app.delete("/api/reviews/{review_id}", response_model=MessageResponse, tags=["Reviews"])
async def delete_review(
    review_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> MessageResponse:
    await reviews.delete_review(db, ctx, review_id)
    return MessageResponse(message="Review deleted")


# =============================================================================
# USER MANAGEMENT ENDPOINTS
# =============================================================================

@app.get("/api/users/stats", response_model=UserStatsResponse, tags=["Users"])
async def user_stats(
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> UserStatsResponse:
    return await users.user_stats(db, ctx)


@app.get("/api/users", response_model=UserListResponse, tags=["Users"])
async def list_users(
    role: Optional[Role] = Query(None),
    status: Optional[UserStatus] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    include_customers: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> UserListResponse:
    total, found = await users.list_users(
        db,
        ctx,
        role=role,
        status=status,
        search=search,
        include_customers=include_customers,
        page=page,
        page_size=page_size,
    )
    return UserListResponse(
        total=total,
        page=page,
        page_size=page_size,
        users=[UserResponse.model_validate(u) for u in found],
    )


@app.post("/api/users", response_model=UserResponse, status_code=201, tags=["Users"])
async def create_user(
    data: UserCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
    notifications: BaseNotificationService = Depends(get_notification_service),
) -> UserResponse:
    """Add a staff member and, if requested, e-mail them an invitation."""
    user = await users.create_user(db, ctx, data)

    if data.send_invitation:
        result = await notifications.send_staff_invitation(
            to_email=user.email,
            name=user.display_name,
            role=user.role.value,
            invited_by=ctx.name or ctx.email,
        )
        if not result.success:
            logger.warning(f"Invitation to {user.email} failed: {result.error_message}")

    return UserResponse.model_validate(user)


@app.patch("/api/users/{user_id}", response_model=UserResponse, tags=["Users"])
async def update_user(
    user_id: str,
    data: UserUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> UserResponse:
    return UserResponse.model_validate(await users.update_user(db, ctx, user_id, data))


@app.post("/api/users/{user_id}/deactivate", response_model=UserResponse, tags=["Users"])
async def deactivate_user(
    user_id: str,
    reason: Optional[str] = Query(None, max_length=500),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> UserResponse:
    return UserResponse.model_validate(await users.deactivate_user(db, ctx, user_id, reason))


@app.post("/api/users/{user_id}/reactivate", response_model=UserResponse, tags=["Users"])
async def reactivate_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> UserResponse:
    return UserResponse.model_validate(await users.reactivate_user(db, ctx, user_id))


@app.get(
    "/api/users/{user_id}/audit-log",
    response_model=list[AuditLogResponse],
    tags=["Users"],
)
async def user_audit_log(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_current_context),
) -> list[AuditLogResponse]:
    entries = await users.user_audit_log(db, ctx, user_id, limit=limit)
    return [AuditLogResponse.from_entry(e) for e in entries]


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bistro.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
