from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
import logging

from models import User, UserRole
from settlement.errors import NotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)

CHARGE_MANAGER_ROLES = {UserRole.ADMIN.value, UserRole.ESTATE_ADMIN.value}


class PermissionChecker:
    """
    Role enforcement for settlement operations.

    RULES:
    1. The acting user must exist in the users collection
    2. Roles are read from the stored user document, never from the request
    3. Admin overrides (mark paid / unpaid, reopen) require the admin role
    4. Creating and cancelling charges requires admin or estate_admin
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_user(self, user_id: str) -> User:
        """Fetch the acting user"""
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            raise NotFoundError("User", str(user_id))

        user = await self.db.users.find_one({"_id": oid})
        if not user:
            raise NotFoundError("User", user_id)

        return User.from_document(user)

    def check_admin_role(self, user: User) -> bool:
        """Check if user has admin role"""
        if user.role != UserRole.ADMIN.value:
            logger.warning(f"[PERMISSIONS] Admin role required, user {user.user_id} has '{user.role}'")
            raise UnauthorizedError(user.user_id, UserRole.ADMIN.value)
        return True

    def check_charge_manager(self, user: User) -> bool:
        """Check if user may create or cancel service charges"""
        if user.role not in CHARGE_MANAGER_ROLES:
            logger.warning(f"[PERMISSIONS] Charge manager role required, user {user.user_id} has '{user.role}'")
            raise UnauthorizedError(user.user_id, "admin or estate_admin")
        return True
