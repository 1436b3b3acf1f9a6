from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
from fastapi import HTTPException, status
import logging

from core.serialization import to_canonical

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: Entity types that CANNOT be deleted
FINANCIAL_ENTITY_TYPES = [
    "TRANSACTION",
    "ANOMALY",
    "LEDGER_BLOCK"
]

class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    def enforce_financial_delete_guard(self, entity_type: str, action_type: str):
        """
        ARCHITECTURAL GUARD: Prevent DELETE operations on financial entities.

        Transactions, anomalies and ledger blocks are never deleted; status
        flags record their outcome instead.

        Raises HTTPException if attempting to delete a financial entity.
        """
        if action_type == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"ARCHITECTURAL GUARD: Cannot DELETE {entity_type}. Financial entities are immutable."
            )

    async def log_action(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: str,
        entity_name: Optional[str] = None,
        user_name: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        ENFORCES: Financial entity delete guard.
        """
        self.enforce_financial_delete_guard(entity_type, action_type)

        try:
            audit_entry = {
                "module_name": module_name,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "entity_name": entity_name,
                "action_type": action_type,
                "old_value_json": to_canonical(old_value),
                "new_value_json": to_canonical(new_value),
                "user_id": user_id,
                "user_name": user_name,
                "timestamp": datetime.utcnow()
            }

            await self.collection.insert_one(audit_entry)
            logger.info(f"Audit log created: {action_type} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"Failed to create audit log: {str(e)}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY)"""
        query = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if user_id:
            query["user_id"] = user_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
