from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
import asyncio
import logging

from core.financial_precision import (
    to_decimal, to_float, safe_add, safe_subtract, sum_amounts, calculate_balance
)
from core.serialization import parse_object_id

logger = logging.getLogger(__name__)


class EntityNotFoundError(Exception):
    """Raised when a referenced budget, department, project or vendor does not exist"""
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class AllocationExceededError(Exception):
    """Raised when a sub-allocation would exceed its parent's amount"""
    def __init__(self, entity_type: str, requested: float, available: float, limit: float):
        self.entity_type = entity_type
        self.requested = requested
        self.available = available
        self.limit = limit
        super().__init__(
            f"{entity_type} allocation of {requested:,.2f} exceeds available amount. "
            f"Available: {available:,.2f} of {limit:,.2f}"
        )


class AggregationConflictError(Exception):
    """Raised when a recalculation keeps losing the version race"""
    pass


class BudgetAggregationService:
    """
    Derived spent/remaining for budgets and their sub-allocations.

    RULES:
    - spent is ALWAYS recomputed from approved transactions (no incremental counters)
    - remaining = allocation - spent
    - Writes are guarded by aggregation_version; a lost race is retried
    - Hierarchy: budget -> department -> project -> vendor
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 20

    # collection -> (transaction foreign key, allocation field)
    ENTITY_RULES = {
        "budgets": ("budget_id", "total_budget"),
        "departments": ("department_id", "budget"),
        "projects": ("project_id", "budget"),
        "vendors": ("vendor_id", "allocated_amount"),
    }

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _approved_total(self, foreign_key: str, entity_id: str, session=None) -> Decimal:
        approved = await self.db.transactions.find(
            {foreign_key: entity_id, "status": "approved"},
            {"amount": 1},
            session=session
        ).to_list(length=None)
        return sum_amounts(approved)

    async def recalculate_entity(
        self,
        collection: str,
        entity_id: str,
        session=None
    ) -> Optional[Dict[str, Any]]:
        """
        Recompute spent/remaining for one entity and persist them if they changed.

        Returns the fresh document, or None if the entity does not exist.
        """
        oid = parse_object_id(entity_id)
        if oid is None:
            return None
        foreign_key, allocation_field = self.ENTITY_RULES[collection]

        for attempt in range(self.MAX_RETRIES):
            entity = await self.db[collection].find_one({"_id": oid}, session=session)
            if not entity:
                logger.warning(f"[AGGREGATION] No {collection} entry found: {entity_id}")
                return None

            spent = await self._approved_total(foreign_key, str(oid), session=session)
            balance = calculate_balance(entity.get(allocation_field) or 0, spent)

            if entity.get("spent") == balance["spent"] and entity.get("remaining") == balance["remaining"]:
                return entity

            version = entity.get("aggregation_version")
            result = await self.db[collection].update_one(
                {
                    "_id": oid,
                    "aggregation_version": version if version is not None else {"$exists": False}
                },
                {
                    "$set": {
                        "spent": balance["spent"],
                        "remaining": balance["remaining"],
                        "last_recalculated_at": datetime.utcnow()
                    },
                    "$inc": {"aggregation_version": 1}
                },
                session=session
            )

            if result.matched_count == 1:
                entity["spent"] = balance["spent"]
                entity["remaining"] = balance["remaining"]
                entity["aggregation_version"] = (version or 0) + 1
                logger.info(
                    f"[AGGREGATION] {collection}:{entity_id} spent={balance['spent']} "
                    f"remaining={balance['remaining']}"
                )
                return entity

            logger.warning(
                f"[AGGREGATION] Version conflict on {collection}:{entity_id}, retry {attempt + 1}"
            )
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise AggregationConflictError(
            f"Failed to recalculate {collection}:{entity_id} after {self.MAX_RETRIES} attempts"
        )

    async def recalculate_budget(self, budget_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.recalculate_entity("budgets", budget_id, session=session)

    async def reconcile_budget(self, budget_id: str) -> Optional[Dict[str, Any]]:
        """Reconciliation on read: bring the cached totals in line before returning the budget."""
        return await self.recalculate_budget(budget_id)

    async def recalculate_for_transaction(self, transaction: Dict[str, Any], session=None):
        """Recalculate the budget and every sub-allocation the transaction references."""
        await self.recalculate_budget(transaction["budget_id"], session=session)
        for collection in ("departments", "projects", "vendors"):
            foreign_key, _ = self.ENTITY_RULES[collection]
            if transaction.get(foreign_key):
                await self.recalculate_entity(collection, transaction[foreign_key], session=session)

    # =========================================================================
    # SUB-ALLOCATION VALIDATION
    # =========================================================================

    async def _validate_allocation(
        self,
        parent_collection: str,
        parent_label: str,
        parent_id: str,
        parent_field: str,
        child_collection: str,
        child_label: str,
        child_foreign_key: str,
        child_field: str,
        requested: float,
        exclude_id: Optional[str] = None
    ) -> Dict[str, float]:
        oid = parse_object_id(parent_id)
        parent = await self.db[parent_collection].find_one({"_id": oid}) if oid else None
        if not parent:
            raise EntityNotFoundError(parent_label, parent_id)

        query = {child_foreign_key: parent_id}
        exclude_oid = parse_object_id(exclude_id) if exclude_id else None
        if exclude_oid:
            query["_id"] = {"$ne": exclude_oid}

        siblings = await self.db[child_collection].find(query, {child_field: 1}).to_list(length=None)
        allocated = sum_amounts(siblings, child_field)
        limit = to_decimal(parent.get(parent_field) or 0)
        available = safe_subtract(limit, allocated)

        if safe_add(allocated, requested) > limit:
            raise AllocationExceededError(
                child_label, float(requested), to_float(available), to_float(limit)
            )

        return {"allocated": to_float(allocated), "available": to_float(available), "limit": to_float(limit)}

    async def validate_department_allocation(
        self, budget_id: str, amount: float, exclude_id: Optional[str] = None
    ) -> Dict[str, float]:
        """Existing department allocations + amount must not exceed the budget's total."""
        return await self._validate_allocation(
            "budgets", "Budget", budget_id, "total_budget",
            "departments", "Department", "budget_id", "budget",
            amount, exclude_id
        )

    async def validate_project_allocation(
        self, department_id: str, amount: float, exclude_id: Optional[str] = None
    ) -> Dict[str, float]:
        return await self._validate_allocation(
            "departments", "Department", department_id, "budget",
            "projects", "Project", "department_id", "budget",
            amount, exclude_id
        )

    async def validate_vendor_allocation(
        self, project_id: str, amount: float, exclude_id: Optional[str] = None
    ) -> Dict[str, float]:
        return await self._validate_allocation(
            "projects", "Project", project_id, "budget",
            "vendors", "Vendor", "project_id", "allocated_amount",
            amount, exclude_id
        )

    async def validate_budget_total(self, budget_id: str, new_total: float) -> None:
        """A budget total cannot drop below what is already allocated to departments."""
        departments = await self.db.departments.find(
            {"budget_id": budget_id}, {"budget": 1}
        ).to_list(length=None)
        allocated = sum_amounts(departments, "budget")
        if to_decimal(new_total) < allocated:
            raise AllocationExceededError(
                "Department", to_float(allocated), float(new_total), float(new_total)
            )

    # =========================================================================
    # SUMMARY
    # =========================================================================

    async def get_budget_summary(self, budget_id: str) -> Optional[Dict[str, Any]]:
        """Totals, utilisation and per-department breakdown (chart-ready)."""
        budget = await self.reconcile_budget(budget_id)
        if not budget:
            return None

        departments = await self.db.departments.find({"budget_id": budget_id}).to_list(length=None)
        breakdown = []
        for dept in departments:
            dept = await self.recalculate_entity("departments", str(dept["_id"])) or dept
            breakdown.append({
                "department_id": str(dept["_id"]),
                "name": dept.get("name"),
                "budget": dept.get("budget", 0),
                **calculate_balance(dept.get("budget") or 0, dept.get("spent") or 0),
            })

        allocated = sum_amounts(departments, "budget")
        total = budget.get("total_budget") or 0

        transaction_counts = {}
        for tx_status in ("pending", "approved", "rejected"):
            transaction_counts[tx_status] = await self.db.transactions.count_documents(
                {"budget_id": budget_id, "status": tx_status}
            )

        return {
            "budget_id": budget_id,
            "name": budget.get("name"),
            "total_budget": total,
            **calculate_balance(total, budget.get("spent") or 0),
            "allocated_to_departments": to_float(allocated),
            "unallocated": to_float(safe_subtract(total, allocated)),
            "departments": breakdown,
            "transaction_counts": transaction_counts,
        }
