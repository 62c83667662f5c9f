"""
User management tests.
"""

import pytest

from bistro.core.errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from bistro.core.security import context_for
from bistro.models import Role, UserStatus
from bistro.schemas import UserCreate, UserUpdate
from bistro.services import users


class TestReads:

    async def test_stats(self, world, db):
        stats = await users.user_stats(db, context_for(world.manager))

        assert stats.total_users == 6
        assert stats.active_users == 6
        assert stats.staff_members == 4
        assert stats.customers == 2
        assert stats.by_role["CHEF"] == 1

    async def test_directory_hides_customers(self, world, db):
        total, listed = await users.list_users(db, context_for(world.manager))

        assert total == 4
        assert Role.CUSTOMER not in {u.role for u in listed}

    async def test_customers_on_request(self, world, db):
        total, _ = await users.list_users(db, context_for(world.manager), include_customers=True)
        by_role, listed = await users.list_users(db, context_for(world.manager), role=Role.CUSTOMER)

        assert total == 6
        assert by_role == 2
        assert {u.email for u in listed} == {"kim@example.com", "lee@example.com"}

    async def test_search_and_pages(self, world, db):
        _, found = await users.list_users(db, context_for(world.admin), search="chef")
        total, page = await users.list_users(db, context_for(world.admin), page=2, page_size=3)

        assert [u.email for u in found] == ["chef@bistro.test"]
        assert total == 4
        assert len(page) == 1

    async def test_staff_cannot_browse(self, world, db):
        with pytest.raises(AuthorizationError):
            await users.list_users(db, context_for(world.chef))


class TestCreate:

    async def test_manager_creates_waiter(self, world, db):
        user = await users.create_user(
            db,
            context_for(world.manager),
            UserCreate(email=" New.Waiter@Bistro.test ", first_name="Nia", last_name="Waits", employee_id="E-7"),
        )

        assert user.email == "new.waiter@bistro.test"
        assert user.name == "Nia Waits"
        assert user.role == Role.WAITER
        assert user.status == UserStatus.ACTIVE
        assert user.created_by_id == world.manager.id

        log = await users.user_audit_log(db, context_for(world.manager), user.id)
        assert [entry.action for entry in log] == ["CREATE"]

    async def test_duplicate_email(self, world, db):
        with pytest.raises(ValidationError, match="email already exists"):
            await users.create_user(db, context_for(world.admin), UserCreate(email="chef@bistro.test"))

    async def test_duplicate_employee_id(self, world, db):
        admin = context_for(world.admin)
        await users.create_user(db, admin, UserCreate(email="a@bistro.test", employee_id="E-1"))
        with pytest.raises(ValidationError, match="employee ID"):
            await users.create_user(db, admin, UserCreate(email="b@bistro.test", employee_id="E-1"))

    async def test_only_admin_grants_admin(self, world, db):
        with pytest.raises(AuthorizationError):
            await users.create_user(db, context_for(world.manager), UserCreate(email="x@bistro.test", role=Role.ADMIN))

        user = await users.create_user(db, context_for(world.admin), UserCreate(email="x@bistro.test", role=Role.ADMIN))
        assert user.role == Role.ADMIN


class TestUpdate:

    async def test_promote_and_rename(self, world, db):
        user = await users.update_user(
            db, context_for(world.manager), world.waiter.id, UserUpdate(role=Role.CHEF, first_name="Wesley")
        )

        assert user.role == Role.CHEF
        assert user.name == "Wesley"

        entry = (await users.user_audit_log(db, context_for(world.manager), world.waiter.id))[0]
        assert entry.action == "UPDATE"
        assert '"previous_role": "WAITER"' in entry.details

    async def test_manager_cannot_promote_to_admin(self, world, db):
        with pytest.raises(AuthorizationError):
            await users.update_user(db, context_for(world.manager), world.chef.id, UserUpdate(role=Role.ADMIN))

    async def test_unknown_user(self, world, db):
        with pytest.raises(NotFoundError):
            await users.update_user(db, context_for(world.admin), "missing", UserUpdate(name="x"))


class TestActivation:

    async def test_deactivate_and_reactivate(self, world, db):
        admin = context_for(world.admin)

        user = await users.deactivate_user(db, admin, world.waiter.id, reason="Left")
        assert user.status == UserStatus.INACTIVE

        user = await users.reactivate_user(db, admin, world.waiter.id)
        assert user.status == UserStatus.ACTIVE

        log = await users.user_audit_log(db, admin, world.waiter.id)
        assert [entry.action for entry in log] == ["REACTIVATE", "DEACTIVATE"]

    async def test_admin_cannot_deactivate_self(self, world, db):
        with pytest.raises(InvalidStateError):
            await users.deactivate_user(db, context_for(world.admin), world.admin.id)

    async def test_manager_cannot_deactivate(self, world, db):
        with pytest.raises(AuthorizationError):
            await users.deactivate_user(db, context_for(world.manager), world.waiter.id)
