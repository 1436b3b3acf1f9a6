"""
ANOMALY DETECTOR

Rule-based checks over a budget's transaction history:
1. Budget overrun  - spent / total_budget against the overrun threshold
2. Unusual spending - most recent amount against the window average
3. Duplicate transactions - pairwise composite similarity over the recent window

RULES:
- Detection is advisory; it never blocks or fails a write
- Every detector catches and logs its own errors and reports "nothing found"
- Anomalies are only changed by explicit admin actions (investigate / resolve)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from core.serialization import parse_object_id
from core.similarity import transaction_similarity
from config import AnomalyThresholds

logger = logging.getLogger(__name__)


class AnomalyType:
    BUDGET_OVERRUN = "budget_overrun"
    UNUSUAL_SPENDING = "unusual_spending"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    VENDOR_ANOMALY = "vendor_anomaly"


class AnomalyStatus:
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"

    OPEN = [ACTIVE, INVESTIGATING]
    CLOSED = [RESOLVED, FALSE_POSITIVE]


SEVERITY_RANK = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}


class AnomalyService:
    """Service for detecting, listing and resolving budget anomalies"""

    COLLECTION = "anomalies"

    def __init__(self, db: AsyncIOMotorDatabase, thresholds: Optional[AnomalyThresholds] = None):
        self.db = db
        self.thresholds = thresholds or AnomalyThresholds()

    async def create_indexes(self):
        await self.db[self.COLLECTION].create_index(
            [("budget_id", 1), ("status", 1), ("severity_rank", -1), ("detected_at", -1)],
            name="idx_anomaly_budget_open"
        )
        await self.db[self.COLLECTION].create_index(
            [("type", 1), ("data.transaction_ids", 1)],
            name="idx_anomaly_type_transactions"
        )
        logger.info("[ANOMALY] Created anomaly indexes")

    async def _save_anomaly(
        self,
        budget_id: str,
        anomaly_type: str,
        severity: str,
        title: str,
        description: str,
        data: Dict[str, Any]
    ) -> Dict[str, Any]:
        anomaly = {
            "budget_id": budget_id,
            "type": anomaly_type,
            "severity": severity,
            "severity_rank": SEVERITY_RANK[severity],
            "title": title,
            "description": description,
            "detected_at": datetime.utcnow(),
            "detected_by": "system",
            "status": AnomalyStatus.ACTIVE,
            "resolved_at": None,
            "resolved_by": None,
            "resolution": None,
            "data": {
                "threshold": data.get("threshold"),
                "actual_value": data.get("actual_value"),
                "expected_value": data.get("expected_value"),
                "deviation": data.get("deviation"),
                "transaction_ids": data.get("transaction_ids", []),
                "vendor_ids": data.get("vendor_ids", []),
            },
        }
        result = await self.db[self.COLLECTION].insert_one(anomaly)
        anomaly["_id"] = result.inserted_id
        logger.info(f"[ANOMALY] {anomaly_type} ({severity}) recorded for budget:{budget_id}")
        return anomaly

    async def _recent_transactions(self, budget_id: str, limit: int) -> List[Dict[str, Any]]:
        cursor = self.db.transactions.find({"budget_id": budget_id}).sort(
            [("created_at", DESCENDING), ("_id", DESCENDING)]
        ).limit(limit)
        return await cursor.to_list(length=limit)

    # =========================================================================
    # DETECTORS
    # =========================================================================

    async def detect_budget_overrun(self, budget_id: str) -> Optional[Dict[str, Any]]:
        """
        Flag a budget whose spent ratio reached the overrun threshold.

        critical >= 0.95, high >= 0.9, otherwise medium.
        Each call above threshold creates a new record.
        """
        try:
            oid = parse_object_id(budget_id)
            if oid is None:
                return None
            budget = await self.db.budgets.find_one({"_id": oid})
            if not budget:
                return None

            total_budget = budget.get("total_budget") or 0
            if total_budget <= 0:
                return None

            spent_ratio = (budget.get("spent") or 0) / total_budget
            t = self.thresholds
            if spent_ratio < t.budget_overrun:
                return None

            if spent_ratio >= t.overrun_critical:
                severity = "critical"
            elif spent_ratio >= t.overrun_high:
                severity = "high"
            else:
                severity = "medium"

            return await self._save_anomaly(
                budget_id=budget_id,
                anomaly_type=AnomalyType.BUDGET_OVERRUN,
                severity=severity,
                title=f"Budget Overrun Alert - {budget.get('name', budget_id)}",
                description=f"Budget has reached {spent_ratio * 100:.1f}% of total allocation.",
                data={
                    "threshold": t.budget_overrun,
                    "actual_value": spent_ratio,
                    "expected_value": t.budget_overrun,
                    "deviation": spent_ratio - t.budget_overrun,
                }
            )
        except Exception as e:
            logger.error(f"[ANOMALY] Error detecting budget overrun for {budget_id}: {str(e)}")
        return None

    async def detect_unusual_spending(self, budget_id: str) -> Optional[Dict[str, Any]]:
        """Compare the most recent amount against the average of the recent window."""
        try:
            t = self.thresholds
            transactions = await self._recent_transactions(budget_id, t.spending_window)
            if len(transactions) < t.min_transactions:
                return None

            amounts = [float(tx.get("amount") or 0) for tx in transactions]
            average = sum(amounts) / len(amounts)
            recent_amount = amounts[0]

            if average <= 0 or recent_amount < average * t.unusual_spending:
                return None

            ratio = recent_amount / average
            severity = "critical" if recent_amount >= average * t.unusual_spending_critical else "high"

            return await self._save_anomaly(
                budget_id=budget_id,
                anomaly_type=AnomalyType.UNUSUAL_SPENDING,
                severity=severity,
                title=f"Unusual Spending Detected - {recent_amount:,.2f}",
                description=(
                    f"Recent transaction amount ({recent_amount:,.2f}) is "
                    f"{ratio:.1f}x the average spending."
                ),
                data={
                    "threshold": t.unusual_spending,
                    "actual_value": recent_amount,
                    "expected_value": average,
                    "deviation": recent_amount - average,
                    "transaction_ids": [str(transactions[0]["_id"])],
                }
            )
        except Exception as e:
            logger.error(f"[ANOMALY] Error detecting unusual spending for {budget_id}: {str(e)}")
        return None

    async def find_duplicate_pairs(self, budget_id: str) -> List[Dict[str, Any]]:
        """
        Score every pair in the recent window.

        Returns pairs at or above the duplicate threshold, in scan order
        (outer index ascending, inner index ascending from outer + 1).
        """
        t = self.thresholds
        transactions = await self._recent_transactions(budget_id, t.duplicate_window)
        vendor_names = await self._vendor_names(transactions)

        pairs = []
        for i in range(len(transactions) - 1):
            for j in range(i + 1, len(transactions)):
                first = transactions[i]
                second = transactions[j]
                similarity = transaction_similarity(
                    float(first.get("amount") or 0),
                    float(second.get("amount") or 0),
                    first.get("description"),
                    second.get("description"),
                    vendor_names.get(first.get("vendor_id"), ""),
                    vendor_names.get(second.get("vendor_id"), ""),
                )
                if similarity >= t.duplicate_transaction:
                    pairs.append({
                        "first": first,
                        "second": second,
                        "similarity": similarity,
                    })
        return pairs

    async def _vendor_names(self, transactions: List[Dict[str, Any]]) -> Dict[str, str]:
        vendor_ids = {tx["vendor_id"] for tx in transactions if tx.get("vendor_id")}
        oids = [oid for oid in (parse_object_id(v) for v in vendor_ids) if oid is not None]
        if not oids:
            return {}
        vendors = await self.db.vendors.find(
            {"_id": {"$in": oids}}, {"name": 1}
        ).to_list(length=None)
        return {str(v["_id"]): v.get("name", "") for v in vendors}

    async def detect_duplicate_transactions(self, budget_id: str) -> List[Dict[str, Any]]:
        """
        Create one anomaly per near-duplicate pair.

        high >= 0.98, otherwise medium. Pairs that already have an open
        duplicate anomaly are skipped.
        """
        created = []
        try:
            t = self.thresholds
            for pair in await self.find_duplicate_pairs(budget_id):
                first, second = pair["first"], pair["second"]
                similarity = pair["similarity"]
                transaction_ids = [str(first["_id"]), str(second["_id"])]

                existing = await self.db[self.COLLECTION].find_one({
                    "budget_id": budget_id,
                    "type": AnomalyType.DUPLICATE_TRANSACTION,
                    "status": {"$in": AnomalyStatus.OPEN},
                    "data.transaction_ids": {"$all": transaction_ids},
                })
                if existing:
                    continue

                vendor_ids = sorted({
                    str(tx["vendor_id"]) for tx in (first, second) if tx.get("vendor_id")
                })
                anomaly = await self._save_anomaly(
                    budget_id=budget_id,
                    anomaly_type=AnomalyType.DUPLICATE_TRANSACTION,
                    severity="high" if similarity >= t.duplicate_high else "medium",
                    title="Potential Duplicate Transaction Detected",
                    description=(
                        f"Two transactions are {similarity * 100:.1f}% similar: "
                        f"\"{first.get('description')}\" and \"{second.get('description')}\""
                    ),
                    data={
                        "threshold": t.duplicate_transaction,
                        "actual_value": similarity,
                        "expected_value": 0.5,
                        "deviation": similarity - t.duplicate_transaction,
                        "transaction_ids": transaction_ids,
                        "vendor_ids": vendor_ids,
                    }
                )
                created.append(anomaly)
        except Exception as e:
            logger.error(f"[ANOMALY] Error detecting duplicate transactions for {budget_id}: {str(e)}")
        return created

    async def run_anomaly_detection(self, budget_id: str) -> List[Dict[str, Any]]:
        """Run all detectors in sequence and collect what they created."""
        anomalies = []

        overrun = await self.detect_budget_overrun(budget_id)
        if overrun:
            anomalies.append(overrun)

        unusual = await self.detect_unusual_spending(budget_id)
        if unusual:
            anomalies.append(unusual)

        anomalies.extend(await self.detect_duplicate_transactions(budget_id))

        logger.info(f"[ANOMALY] Detection run for budget:{budget_id} created {len(anomalies)} anomalies")
        return anomalies

    # =========================================================================
    # QUERIES & ADMIN ACTIONS
    # =========================================================================

    async def get_active_anomalies(self, budget_id: str) -> List[Dict[str, Any]]:
        """Open anomalies, most severe first, newest first within a severity."""
        cursor = self.db[self.COLLECTION].find({
            "budget_id": budget_id,
            "status": {"$in": AnomalyStatus.OPEN}
        }).sort([("severity_rank", DESCENDING), ("detected_at", DESCENDING), ("_id", DESCENDING)])
        return await cursor.to_list(length=None)

    async def list_anomalies(
        self,
        budget_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        query = {}
        if budget_id:
            query["budget_id"] = budget_id
        if status:
            query["status"] = status
        cursor = self.db[self.COLLECTION].find(query).sort("detected_at", DESCENDING).limit(limit)
        return await cursor.to_list(length=limit)

    async def get_anomaly(self, anomaly_id: str) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(anomaly_id)
        if oid is None:
            return None
        return await self.db[self.COLLECTION].find_one({"_id": oid})

    async def start_investigation(self, anomaly_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """active -> investigating. Returns None if not found or not active."""
        oid = parse_object_id(anomaly_id)
        if oid is None:
            return None
        return await self.db[self.COLLECTION].find_one_and_update(
            {"_id": oid, "status": AnomalyStatus.ACTIVE},
            {"$set": {
                "status": AnomalyStatus.INVESTIGATING,
                "investigated_by": user_id,
                "investigation_started_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER
        )

    async def resolve_anomaly(
        self,
        anomaly_id: str,
        resolved_by: str,
        resolution: str,
        outcome: str = AnomalyStatus.RESOLVED
    ) -> Optional[Dict[str, Any]]:
        """Close an anomaly as resolved (or false_positive). Returns the updated record."""
        if outcome not in AnomalyStatus.CLOSED:
            raise ValueError(f"Invalid resolution outcome: {outcome}")
        oid = parse_object_id(anomaly_id)
        if oid is None:
            return None

        anomaly = await self.db[self.COLLECTION].find_one_and_update(
            {"_id": oid},
            {"$set": {
                "status": outcome,
                "resolved_at": datetime.utcnow(),
                "resolved_by": resolved_by,
                "resolution": resolution,
            }},
            return_document=ReturnDocument.AFTER
        )
        if anomaly:
            logger.info(f"[ANOMALY] {anomaly_id} marked {outcome} by user:{resolved_by}")
        return anomaly
