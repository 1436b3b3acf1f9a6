from fastapi import HTTPException, status, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from auth import get_current_user
from core.serialization import parse_object_id
import logging

logger = logging.getLogger(__name__)

class PermissionChecker:
    """
    Permission enforcement for budget operations.

    RULES:
    1. User must be authenticated
    2. User must have active_status = TRUE
    3. Editors may only write to budgets listed in assigned_budgets
    4. Approvals, allocations and anomaly actions are admin only
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict = Depends(get_current_user)):
        """Get and validate authenticated user"""
        oid = parse_object_id(current_user.get("user_id"))
        user = await self.db.users.find_one({"_id": oid}) if oid else None

        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )

        if not user.get("active_status", False):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        # Convert _id to user_id for consistency
        user["user_id"] = str(user.pop("_id"))

        return user

    async def check_admin_role(self, user: dict):
        """Check if user has admin role"""
        if user.get("role") != "admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin role required for this operation"
            )
        return True

    async def check_budget_write_access(self, user: dict, budget_id: str):
        """
        Admins may write to any budget; editors only to their assigned budgets.
        """
        role = user.get("role")
        if role == "admin":
            return True

        if role != "editor":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Editor or admin role required for this operation"
            )

        if budget_id not in user.get("assigned_budgets", []):
            logger.warning(f"Editor {user['user_id']} denied write access to budget:{budget_id}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User is not assigned to this budget"
            )

        return True
