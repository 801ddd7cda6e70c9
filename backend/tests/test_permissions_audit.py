"""
Role checks against stored users, and the insert-only audit trail.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

from audit_service import AuditService
from models import User
from permissions import PermissionChecker
from settlement.errors import NotFoundError, UnauthorizedError


@pytest.fixture
def users_db():
    db = MagicMock()
    db.users.find_one = AsyncMock()
    return db


class TestPermissionChecker:

    @pytest.mark.asyncio
    async def test_get_user_reads_stored_role(self, users_db):
        user_id = ObjectId()
        users_db.users.find_one.return_value = {
            "_id": user_id, "name": "Amaka", "email": "admin@greenfield.com", "role": "admin",
            "hashed_password": "ignored",
        }

        user = await PermissionChecker(users_db).get_user(str(user_id))

        assert user.user_id == str(user_id)
        assert user.role == "admin"
        users_db.users.find_one.assert_awaited_once_with({"_id": user_id})

    @pytest.mark.asyncio
    async def test_get_user_keeps_unusual_stored_email(self, users_db):
        user_id = ObjectId()
        users_db.users.find_one.return_value = {
            "_id": user_id, "name": "Ada", "email": "ada@greenfield.local", "role": "admin",
        }

        user = await PermissionChecker(users_db).get_user(str(user_id))

        assert user.email == "ada@greenfield.local"
        assert PermissionChecker(users_db).check_admin_role(user) is True

    @pytest.mark.asyncio
    async def test_unknown_user(self, users_db):
        users_db.users.find_one.return_value = None
        with pytest.raises(NotFoundError):
            await PermissionChecker(users_db).get_user(str(ObjectId()))

    @pytest.mark.asyncio
    async def test_malformed_user_id(self, users_db):
        with pytest.raises(NotFoundError):
            await PermissionChecker(users_db).get_user("admin")
        users_db.users.find_one.assert_not_awaited()

    def test_admin_role(self, users_db):
        checker = PermissionChecker(users_db)
        assert checker.check_admin_role(User(user_id="1", role="admin")) is True
        with pytest.raises(UnauthorizedError):
            checker.check_admin_role(User(user_id="2", role="estate_admin"))

    def test_charge_manager(self, users_db):
        checker = PermissionChecker(users_db)
        assert checker.check_charge_manager(User(user_id="1", role="estate_admin")) is True
        with pytest.raises(UnauthorizedError) as exc:
            checker.check_charge_manager(User(user_id="2"))
        assert exc.value.user_id == "2"


class TestAuditService:

    @pytest.fixture
    def audit_db(self):
        db = MagicMock()
        db.audit_logs.insert_one = AsyncMock()
        return db

    @pytest.mark.asyncio
    async def test_log_action_inserts_entry(self, audit_db):
        await AuditService(audit_db).log_action(
            entity_type="PAYMENT",
            entity_id="ref-1",
            action_type="PAYMENT_COMPLETED",
            user_id="u1",
            new_value={"amount": 10000}
        )

        entry = audit_db.audit_logs.insert_one.await_args.args[0]
        assert entry["entity_type"] == "PAYMENT"
        assert entry["new_value_json"] == {"amount": 10000}
        assert entry["timestamp"] is not None

    @pytest.mark.asyncio
    async def test_insert_failure_does_not_propagate(self, audit_db):
        audit_db.audit_logs.insert_one.side_effect = Exception("mongo down")
        await AuditService(audit_db).log_action("PAYMENT", "ref-1", "PAYMENT_FAILED", "u1")
