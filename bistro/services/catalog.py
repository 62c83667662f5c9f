"""
Catalog Store

Menus, categories and menu items. Reads are public; writes are limited
to management, except availability which the kitchen may also toggle.
An item always belongs to one category and one menu, so neither can be
deleted while items still point at it.
"""

import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.errors import InvalidStateError, NotFoundError, ValidationError
from bistro.core.security import RequestContext, ensure_role
from bistro.models import (
    Category,
    MANAGEMENT_ROLES,
    Menu,
    MenuItem,
    OrderItem,
    Role,
)
from bistro.schemas import (
    CategoryCreate,
    CategoryUpdate,
    MenuCreate,
    MenuItemCreate,
    MenuItemUpdate,
    MenuUpdate,
)

logger = logging.getLogger(__name__)

KITCHEN_ROLES = (Role.ADMIN, Role.MANAGER, Role.CHEF)


# =============================================================================
# READS
# =============================================================================

async def list_menus(db: AsyncSession, active_only: bool = False) -> list[Menu]:
    query = select(Menu).order_by(Menu.name)
    if active_only:
        query = query.where(Menu.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_categories(db: AsyncSession) -> list[Category]:
    result = await db.execute(select(Category).order_by(Category.name))
    return list(result.scalars().all())


async def list_menu_items(
    db: AsyncSession,
    category_id: Optional[str] = None,
    menu_id: Optional[str] = None,
    available_only: bool = False,
    vegetarian: Optional[bool] = None,
    vegan: Optional[bool] = None,
    gluten_free: Optional[bool] = None,
    spicy: Optional[bool] = None,
    search: Optional[str] = None,
) -> list[MenuItem]:
    """List menu items with optional filters, alphabetically."""
    query = select(MenuItem).order_by(MenuItem.name)

    if category_id:
        query = query.where(MenuItem.category_id == category_id)
    if menu_id:
        query = query.where(MenuItem.menu_id == menu_id)
    if available_only:
        query = query.where(MenuItem.is_available.is_(True))
    if vegetarian is not None:
        query = query.where(MenuItem.is_vegetarian.is_(vegetarian))
    if vegan is not None:
        query = query.where(MenuItem.is_vegan.is_(vegan))
    if gluten_free is not None:
        query = query.where(MenuItem.is_gluten_free.is_(gluten_free))
    if spicy is not None:
        query = query.where(MenuItem.is_spicy.is_(spicy))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(MenuItem.name.ilike(pattern), MenuItem.description.ilike(pattern)))

    result = await db.execute(query)
    return list(result.scalars().all())


async def get_menu_item(db: AsyncSession, item_id: str) -> MenuItem:
    item = await db.get(MenuItem, item_id)
    if item is None:
        raise NotFoundError("Menu item not found")
    return item


async def _get_menu(db: AsyncSession, menu_id: str) -> Menu:
    menu = await db.get(Menu, menu_id)
    if menu is None:
        raise NotFoundError("Menu not found")
    return menu


async def _get_category(db: AsyncSession, category_id: str) -> Category:
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category not found")
    return category


async def _count_items(db: AsyncSession, column, value: str) -> int:
    result = await db.execute(select(func.count(MenuItem.id)).where(column == value))
    return result.scalar_one()


# =============================================================================
# MENUS
# =============================================================================

async def create_menu(db: AsyncSession, ctx: RequestContext, data: MenuCreate) -> Menu:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    menu = Menu(**data.model_dump())
    db.add(menu)
    await db.commit()
    logger.info(f"Menu created: {menu.name} by {ctx.user_id}")
    return menu


async def update_menu(db: AsyncSession, ctx: RequestContext, menu_id: str, data: MenuUpdate) -> Menu:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    menu = await _get_menu(db, menu_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(menu, field, value)
    await db.commit()
    return menu


async def delete_menu(db: AsyncSession, ctx: RequestContext, menu_id: str) -> None:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    menu = await _get_menu(db, menu_id)

    count = await _count_items(db, MenuItem.menu_id, menu_id)
    if count:
        raise InvalidStateError(
            f"Cannot delete menu with {count} item(s). Move or delete the items first."
        )

    await db.delete(menu)
    await db.commit()
    logger.info(f"Menu deleted: {menu_id} by {ctx.user_id}")


# =============================================================================
# CATEGORIES
# =============================================================================

async def _ensure_unique_category_name(
    db: AsyncSession, name: str, exclude_id: Optional[str] = None
) -> None:
    query = select(Category.id).where(func.lower(Category.name) == name.strip().lower())
    if exclude_id:
        query = query.where(Category.id != exclude_id)
    if (await db.execute(query)).first() is not None:
        raise ValidationError(f"A category named '{name}' already exists")


async def create_category(db: AsyncSession, ctx: RequestContext, data: CategoryCreate) -> Category:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    await _ensure_unique_category_name(db, data.name)

    category = Category(name=data.name.strip(), description=data.description)
    db.add(category)
    await db.commit()
    logger.info(f"Category created: {category.name} by {ctx.user_id}")
    return category


async def update_category(
    db: AsyncSession, ctx: RequestContext, category_id: str, data: CategoryUpdate
) -> Category:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    category = await _get_category(db, category_id)

    updates = data.model_dump(exclude_unset=True)
    if updates.get("name"):
        await _ensure_unique_category_name(db, updates["name"], exclude_id=category_id)
        updates["name"] = updates["name"].strip()

    for field, value in updates.items():
        setattr(category, field, value)
    await db.commit()
    return category


async def delete_category(db: AsyncSession, ctx: RequestContext, category_id: str) -> None:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    category = await _get_category(db, category_id)

    count = await _count_items(db, MenuItem.category_id, category_id)
    if count:
        raise InvalidStateError(
            f"Cannot delete category with {count} item(s). Move or delete the items first."
        )

    await db.delete(category)
    await db.commit()
    logger.info(f"Category deleted: {category_id} by {ctx.user_id}")


# =============================================================================
# MENU ITEMS
# =============================================================================

async def create_menu_item(db: AsyncSession, ctx: RequestContext, data: MenuItemCreate) -> MenuItem:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    await _get_menu(db, data.menu_id)
    await _get_category(db, data.category_id)

    item = MenuItem(**data.model_dump())
    db.add(item)
    await db.commit()
    await db.refresh(item, attribute_names=["category", "menu"])
    logger.info(f"Menu item created: {item.name} (${item.price}) by {ctx.user_id}")
    return item


async def update_menu_item(
    db: AsyncSession, ctx: RequestContext, item_id: str, data: MenuItemUpdate
) -> MenuItem:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    item = await get_menu_item(db, item_id)

    updates = data.model_dump(exclude_unset=True)
    if updates.get("menu_id"):
        await _get_menu(db, updates["menu_id"])
    if updates.get("category_id"):
        await _get_category(db, updates["category_id"])

    for field, value in updates.items():
        setattr(item, field, value)
    await db.commit()
    await db.refresh(item, attribute_names=["category", "menu"])
    return item


async def set_availability(
    db: AsyncSession, ctx: RequestContext, item_id: str, is_available: bool
) -> MenuItem:
    ensure_role(ctx, *KITCHEN_ROLES)
    item = await get_menu_item(db, item_id)
    item.is_available = is_available
    await db.commit()
    logger.info(f"Menu item {item.name} marked {'available' if is_available else 'unavailable'}")
    return item


async def delete_menu_item(db: AsyncSession, ctx: RequestContext, item_id: str) -> None:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    item = await get_menu_item(db, item_id)

    ordered = await db.execute(
        select(func.count(OrderItem.id)).where(OrderItem.menu_item_id == item_id)
    )
    if ordered.scalar_one():
        raise InvalidStateError(
            "Cannot delete an item that appears on past orders. Mark it unavailable instead."
        )

    await db.delete(item)
    await db.commit()
    logger.info(f"Menu item deleted: {item_id} by {ctx.user_id}")
