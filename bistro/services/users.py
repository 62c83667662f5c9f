"""
User Management

Staff accounts administered by ADMIN and MANAGER; deactivation and
reactivation are ADMIN only. Every mutation appends a ``UserAuditLog``
entry in the same commit as the change itself.
"""

import json
import logging
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from bistro.core.security import RequestContext, ensure_role
from bistro.models import (
    MANAGEMENT_ROLES,
    Role,
    STAFF_ROLES,
    User,
    UserAuditLog,
    UserStatus,
)
from bistro.schemas import UserCreate, UserStatsResponse, UserUpdate
from bistro.services.common import page_bounds

logger = logging.getLogger(__name__)


def _audit(
    db: AsyncSession,
    user_id: str,
    action: str,
    performed_by: str,
    details: Optional[dict[str, Any]] = None,
) -> None:
    db.add(
        UserAuditLog(
            user_id=user_id,
            action=action,
            performed_by_id=performed_by,
            details=json.dumps(details, default=str) if details else None,
        )
    )


async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def _ensure_unique_employee_id(
    db: AsyncSession, employee_id: str, exclude_id: Optional[str] = None
) -> None:
    query = select(User.id).where(User.employee_id == employee_id)
    if exclude_id:
        query = query.where(User.id != exclude_id)
    if (await db.execute(query)).first() is not None:
        raise ValidationError("A user with this employee ID already exists")


def _full_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    name = f"{first or ''} {last or ''}".strip()
    return name or None


# =============================================================================
# READS
# =============================================================================

async def user_stats(db: AsyncSession, ctx: RequestContext) -> UserStatsResponse:
    ensure_role(ctx, *MANAGEMENT_ROLES)

    by_status = dict(
        (await db.execute(select(User.status, func.count(User.id)).group_by(User.status))).all()
    )
    by_role = dict(
        (await db.execute(select(User.role, func.count(User.id)).group_by(User.role))).all()
    )

    return UserStatsResponse(
        total_users=sum(by_role.values()),
        active_users=by_status.get(UserStatus.ACTIVE, 0),
        inactive_users=by_status.get(UserStatus.INACTIVE, 0),
        suspended_users=by_status.get(UserStatus.SUSPENDED, 0),
        staff_members=sum(by_role.get(role, 0) for role in STAFF_ROLES),
        customers=by_role.get(Role.CUSTOMER, 0),
        by_role={role.value: by_role.get(role, 0) for role in Role},
    )


async def list_users(
    db: AsyncSession,
    ctx: RequestContext,
    role: Optional[Role] = None,
    status: Optional[UserStatus] = None,
    search: Optional[str] = None,
    include_customers: bool = False,
    page: int = 1,
    page_size: int = 20,
) -> tuple[int, list[User]]:
    """Staff directory. Customers are hidden unless asked for or filtered by role."""
    ensure_role(ctx, *MANAGEMENT_ROLES)

    query = select(User)
    if role:
        query = query.where(User.role == role)
    elif not include_customers:
        query = query.where(User.role.in_(STAFF_ROLES))
    if status:
        query = query.where(User.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                User.email.ilike(pattern),
                User.name.ilike(pattern),
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
                User.employee_id.ilike(pattern),
            )
        )

    total = await db.scalar(select(func.count()).select_from(query.subquery()))

    offset, limit = page_bounds(page, page_size)
    result = await db.execute(
        query.order_by(User.created_at.desc()).offset(offset).limit(limit)
    )
    return total or 0, list(result.scalars().all())


async def user_audit_log(
    db: AsyncSession, ctx: RequestContext, user_id: str, limit: int = 50
) -> list[UserAuditLog]:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    await _get_user(db, user_id)

    result = await db.execute(
        select(UserAuditLog)
        .where(UserAuditLog.user_id == user_id)
        .order_by(UserAuditLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# MUTATIONS
# =============================================================================

async def create_user(db: AsyncSession, ctx: RequestContext, data: UserCreate) -> User:
    """
    Create a staff (or customer) account.

    The caller sends the invitation afterwards when ``data.send_invitation``
    is set; credentials themselves live with the auth provider.

    Raises:
        ValidationError: Email or employee id already in use
    """
    ensure_role(ctx, *MANAGEMENT_ROLES)
    if data.role == Role.ADMIN and not ctx.has_role(Role.ADMIN):
        raise AuthorizationError("Only an admin can grant the ADMIN role")

    if await db.scalar(select(User.id).where(User.email == data.email)):
        raise ValidationError("A user with this email already exists")
    if data.employee_id:
        await _ensure_unique_employee_id(db, data.employee_id)

    user = User(
        email=data.email,
        name=data.name or _full_name(data.first_name, data.last_name),
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        role=data.role,
        status=UserStatus.ACTIVE,
        employee_id=data.employee_id,
        hire_date=data.hire_date,
        created_by_id=ctx.user_id,
    )
    db.add(user)
    await db.flush()

    _audit(db, user.id, "CREATE", ctx.user_id, {
        "role": data.role.value,
        "employee_id": data.employee_id,
        "invitation": data.send_invitation,
    })
    await db.commit()

    logger.info(f"User created: {user.email} ({user.role.value}) by {ctx.user_id}")
    return user


async def update_user(
    db: AsyncSession, ctx: RequestContext, user_id: str, data: UserUpdate
) -> User:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    user = await _get_user(db, user_id)

    updates = data.model_dump(exclude_unset=True)
    for field in ("role", "status"):
        if updates.get(field) is None:
            updates.pop(field, None)
    if updates.get("employee_id") and updates["employee_id"] != user.employee_id:
        await _ensure_unique_employee_id(db, updates["employee_id"], exclude_id=user_id)
    if updates.get("role") == Role.ADMIN and not ctx.has_role(Role.ADMIN):
        raise AuthorizationError("Only an admin can grant the ADMIN role")

    previous_role = user.role
    for field, value in updates.items():
        setattr(user, field, value)
    if ("first_name" in updates or "last_name" in updates) and "name" not in updates:
        user.name = _full_name(user.first_name, user.last_name) or user.name

    _audit(db, user_id, "UPDATE", ctx.user_id, {
        "changes": {k: getattr(v, "value", v) for k, v in updates.items()},
        "previous_role": previous_role.value,
        "new_role": user.role.value,
    })
    await db.commit()

    logger.info(f"User updated: {user.email} by {ctx.user_id}")
    return user


async def deactivate_user(
    db: AsyncSession, ctx: RequestContext, user_id: str, reason: Optional[str] = None
) -> User:
    ensure_role(ctx, Role.ADMIN)
    user = await _get_user(db, user_id)
    if user_id == ctx.user_id:
        raise InvalidStateError("You cannot deactivate your own account")

    previous = user.status
    user.status = UserStatus.INACTIVE
    _audit(db, user_id, "DEACTIVATE", ctx.user_id, {
        "reason": reason,
        "previous_status": previous.value,
    })
    await db.commit()

    logger.info(f"User deactivated: {user.email} by {ctx.user_id}")
    return user


async def reactivate_user(db: AsyncSession, ctx: RequestContext, user_id: str) -> User:
    ensure_role(ctx, Role.ADMIN)
    user = await _get_user(db, user_id)

    previous = user.status
    user.status = UserStatus.ACTIVE
    _audit(db, user_id, "REACTIVATE", ctx.user_id, {"previous_status": previous.value})
    await db.commit()

    logger.info(f"User reactivated: {user.email} by {ctx.user_id}")
    return user
