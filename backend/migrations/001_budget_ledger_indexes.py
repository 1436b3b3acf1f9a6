#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Budget roll-ups, anomalies and ledger

Does:
1. Backfill aggregation_version = 0 on budgets / departments / projects / vendors
2. Recompute spent / remaining for every budget entity from approved transactions
3. Create anomaly and ledger indexes, write the genesis block if missing

Run: python migrations/001_budget_ledger_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient

import config
from anomaly_service import AnomalyService
from budget_service import BudgetAggregationService
from ledger_service import LedgerService, MongoLedgerStore

MIGRATION_ID = "001_budget_ledger_indexes"


async def run_migration():
    """Execute the budget / ledger migration."""

    print(f"Connecting to: {config.MONGO_URL}")
    print(f"Database: {config.DB_NAME}")

    client = AsyncIOMotorClient(config.MONGO_URL)
    db = client[config.DB_NAME]

    try:
        # Test connection
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        # =====================================================
        # 1. Backfill aggregation_version
        # =====================================================
        aggregation = BudgetAggregationService(db)
        backfilled = {}
        for collection in aggregation.ENTITY_RULES:
            result = await db[collection].update_many(
                {"aggregation_version": {"$exists": False}},
                {"$set": {"aggregation_version": 0}}
            )
            backfilled[collection] = result.modified_count
            print(f"✓ {collection}: aggregation_version set on {result.modified_count} documents")

        # =====================================================
        # 2. Recompute derived totals
        # =====================================================
        recalculated = 0
        for collection in aggregation.ENTITY_RULES:
            async for doc in db[collection].find({}, {"_id": 1}):
                await aggregation.recalculate_entity(collection, str(doc["_id"]))
                recalculated += 1
        print(f"✓ Recomputed spent/remaining for {recalculated} entities")

        # =====================================================
        # 3. Indexes and genesis block
        # =====================================================
        await db.transactions.create_index(
            [("budget_id", 1), ("created_at", -1)],
            name="idx_transaction_budget_created"
        )
        await db.transactions.create_index(
            [("budget_id", 1), ("status", 1)],
            name="idx_transaction_budget_status"
        )
        print("✓ Created transaction indexes")

        await AnomalyService(db).create_indexes()
        print("✓ Created anomaly indexes")

        store = MongoLedgerStore(db)
        await store.create_indexes()
        genesis = await LedgerService(store).ensure_genesis()
        print(f"✓ Ledger ready, genesis hash {genesis['hash']}")

        # =====================================================
        # Migration metadata
        # =====================================================
        migration_record = {
            "migration_id": MIGRATION_ID,
            "description": "Budget roll-up versioning, anomaly and ledger indexes",
            "backfilled": backfilled,
            "recalculated": recalculated,
            "executed_at": datetime.utcnow(),
            "status": "success"
        }

        await db.migrations.update_one(
            {"migration_id": MIGRATION_ID},
            {"$set": migration_record},
            upsert=True
        )
        print("\n✓ Migration record saved")

        print("\n" + "="*50)
        print("MIGRATION COMPLETE: Budget roll-ups, anomalies and ledger")
        print("="*50)

        return {
            "status": "success",
            "backfilled": backfilled,
            "recalculated": recalculated
        }

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
