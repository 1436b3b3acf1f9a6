"""
BUDGET TRANSACTIONS

Lifecycle: pending -> approved | rejected (terminal, never deleted).

- Approval recalculates the budget roll-up from approved transactions
- Approved transactions are recorded on the ledger (off the request path)
- Every state change is audit logged
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from audit_service import AuditService
from budget_service import BudgetAggregationService, EntityNotFoundError, AggregationConflictError
from ledger_service import LedgerService, now_ms
from core.financial_precision import validate_positive, to_float
from core.serialization import parse_object_id, sha256_hex

logger = logging.getLogger(__name__)


class TransactionStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InvalidStatusTransitionError(Exception):
    """Raised when a decided transaction is decided again"""
    def __init__(self, transaction_id: str, current_status: str, requested_status: str):
        self.transaction_id = transaction_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Cannot move transaction {transaction_id} from {current_status} to {requested_status}"
        )


def compute_transaction_hash(description: str, amount: float, timestamp_ms: int) -> str:
    return sha256_hex(f"{description}-{amount}-{timestamp_ms}")


class TransactionService:
    """Create, decide and record budget transactions"""

    # most specific first: (field, collection, label, parent field)
    HIERARCHY = [
        ("vendor_id", "vendors", "Vendor", "project_id"),
        ("project_id", "projects", "Project", "department_id"),
        ("department_id", "departments", "Department", "budget_id"),
    ]

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        aggregation: BudgetAggregationService,
        audit: AuditService,
        ledger: LedgerService
    ):
        self.db = db
        self.aggregation = aggregation
        self.audit = audit
        self.ledger = ledger

    async def _require(self, collection: str, label: str, entity_id: str) -> Dict[str, Any]:
        oid = parse_object_id(entity_id)
        entity = await self.db[collection].find_one({"_id": oid}) if oid else None
        if not entity:
            raise EntityNotFoundError(label, entity_id)
        return entity

    async def _resolve_hierarchy(self, data: Dict[str, Any]) -> Dict[str, Optional[str]]:
        """
        Walk vendor -> project -> department -> budget from the most specific reference.

        The chain must end at the transaction's budget and agree with any parent
        id the caller supplied. Parents implied by the chain are filled in.
        """
        resolved = {}
        derived_id = None
        for field, collection, label, parent_field in self.HIERARCHY:
            supplied_id = data.get(field)
            if derived_id and supplied_id and supplied_id != derived_id:
                raise ValueError(f"{label} {supplied_id} does not match the chain ({derived_id})")

            entity_id = derived_id or supplied_id
            resolved[field] = entity_id
            if not entity_id:
                continue

            entity = await self._require(collection, label, entity_id)
            derived_id = entity.get(parent_field)
            if not derived_id:
                raise ValueError(f"{label} {entity_id} has no {parent_field}")

        if derived_id and derived_id != data["budget_id"]:
            raise ValueError(f"Referenced allocations belong to budget {derived_id}, not {data['budget_id']}")
        return resolved

    async def create_transaction(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a new pending transaction.

        Raises NegativeValueError for amount <= 0 and EntityNotFoundError for
        an unknown budget, department, project or vendor.
        """
        validate_positive(data["amount"], "amount")
        await self._require("budgets", "Budget", data["budget_id"])
        references = await self._resolve_hierarchy(data)

        now = datetime.utcnow()
        receipt = data.get("receipt")
        if receipt:
            receipt = {**receipt, "uploaded_at": now, "verified": False}

        transaction = {
            "description": data["description"],
            "amount": to_float(data["amount"]),
            "budget_id": data["budget_id"],
            "department_id": references["department_id"],
            "project_id": references["project_id"],
            "vendor_id": references["vendor_id"],
            "category": data.get("category"),
            "notes": data.get("notes"),
            "receipt": receipt,
            "status": TransactionStatus.PENDING,
            "created_by": user["user_id"],
            "created_at": now,
            "updated_at": now,
            "approved_by": None,
            "approved_at": None,
            "approval_comments": [],
            "transaction_hash": compute_transaction_hash(data["description"], data["amount"], now_ms()),
            "blockchain_id": None,
            "block_hash": None,
            "block_index": None,
        }

        result = await self.db.transactions.insert_one(transaction)
        transaction["_id"] = result.inserted_id

        await self.audit.log_action(
            module_name="TRANSACTIONS",
            entity_type="TRANSACTION",
            entity_id=str(result.inserted_id),
            entity_name=transaction["description"],
            action_type="CREATE",
            user_id=user["user_id"],
            user_name=user.get("name"),
            new_value={"amount": transaction["amount"], "budget_id": transaction["budget_id"]}
        )
        logger.info(f"Transaction created: {result.inserted_id} amount={transaction['amount']}")
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(transaction_id)
        if oid is None:
            return None
        return await self.db.transactions.find_one({"_id": oid})

    async def list_transactions(
        self,
        budget_id: Optional[str] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        query = {}
        if budget_id:
            query["budget_id"] = budget_id
        if status:
            query["status"] = status
        cursor = self.db.transactions.find(query).sort(
            [("created_at", DESCENDING), ("_id", DESCENDING)]
        ).skip(skip).limit(limit)
        return await cursor.to_list(length=limit)

    async def _decide(
        self,
        transaction_id: str,
        new_status: str,
        user: Dict[str, Any],
        extra_fields: Dict[str, Any],
        push: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Atomic pending -> new_status transition. Returns None if the transaction does not exist."""
        oid = parse_object_id(transaction_id)
        if oid is None:
            return None

        update = {"$set": {"status": new_status, "updated_at": datetime.utcnow(), **extra_fields}}
        if push:
            update["$push"] = push

        updated = await self.db.transactions.find_one_and_update(
            {"_id": oid, "status": TransactionStatus.PENDING},
            update,
            return_document=ReturnDocument.AFTER
        )
        if updated:
            return updated

        current = await self.db.transactions.find_one({"_id": oid}, {"status": 1})
        if not current:
            return None
        raise InvalidStatusTransitionError(transaction_id, current["status"], new_status)

    async def approve_transaction(
        self,
        transaction_id: str,
        user: Dict[str, Any],
        comment: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        now = datetime.utcnow()
        push = None
        if comment:
            push = {"approval_comments": {
                "comment": comment,
                "commented_by": user["user_id"],
                "commented_at": now
            }}

        transaction = await self._decide(
            transaction_id,
            TransactionStatus.APPROVED,
            user,
            {"approved_by": user["user_id"], "approved_at": now},
            push
        )
        if transaction is None:
            return None

        await self.audit.log_action(
            module_name="TRANSACTIONS",
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            entity_name=transaction.get("description"),
            action_type="APPROVE",
            user_id=user["user_id"],
            user_name=user.get("name"),
            old_value={"status": TransactionStatus.PENDING},
            new_value={"status": TransactionStatus.APPROVED, "comment": comment}
        )
        logger.info(f"Transaction approved: {transaction_id} by user:{user['user_id']}")

        # The approval is committed; totals are recomputed again on the next read
        try:
            await self.aggregation.recalculate_for_transaction(transaction)
        except AggregationConflictError as e:
            logger.warning(f"[AGGREGATION] Roll-up deferred for transaction {transaction_id}: {str(e)}")

        return transaction

    async def reject_transaction(
        self,
        transaction_id: str,
        user: Dict[str, Any],
        reason: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        transaction = await self._decide(
            transaction_id,
            TransactionStatus.REJECTED,
            user,
            {"rejected_by": user["user_id"], "rejected_at": datetime.utcnow(), "rejection_reason": reason}
        )
        if transaction is None:
            return None

        await self.audit.log_action(
            module_name="TRANSACTIONS",
            entity_type="TRANSACTION",
            entity_id=transaction_id,
            entity_name=transaction.get("description"),
            action_type="REJECT",
            user_id=user["user_id"],
            user_name=user.get("name"),
            old_value={"status": TransactionStatus.PENDING},
            new_value={"status": TransactionStatus.REJECTED, "reason": reason}
        )
        logger.info(f"Transaction rejected: {transaction_id} by user:{user['user_id']}")
        return transaction

    async def record_on_ledger(self, transaction_id: str) -> Dict[str, Any]:
        """
        Record a transaction on the ledger and store the block reference on it.
        Failures are logged and returned, never raised.
        """
        try:
            transaction = await self.get_transaction(transaction_id)
            if not transaction:
                return {"success": False, "error": f"Transaction not found: {transaction_id}"}

            result = await self.ledger.store_transaction(transaction)
            if not result["success"]:
                logger.warning(f"[LEDGER] Transaction {transaction_id} not recorded: {result['error']}")
                return result

            await self.db.transactions.update_one(
                {"_id": transaction["_id"]},
                {"$set": {
                    "blockchain_id": result["transaction_id"],
                    "block_hash": result["block_hash"],
                    "block_index": result["block_index"],
                    "ledger_recorded_at": datetime.utcnow()
                }}
            )
            return result
        except Exception as e:
            logger.error(f"[LEDGER] Failed to record transaction {transaction_id}: {str(e)}")
            return {"success": False, "error": str(e)}
