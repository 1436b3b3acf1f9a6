import asyncio
from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from audit_service import AuditService
from budget_service import BudgetAggregationService
from ledger_service import LedgerService, InMemoryLedgerStore
from transaction_service import TransactionService


@pytest.fixture
def db():
    """Fresh in-memory database per test"""
    return AsyncMongoMockClient()["budget_transparency_test"]


@pytest.fixture
def run():
    """Drive a coroutine to completion on a fresh event loop"""
    return asyncio.run


@pytest.fixture
def admin_user():
    return {"user_id": "admin-1", "name": "Admin", "role": "admin"}


@pytest.fixture
def ledger():
    return LedgerService(InMemoryLedgerStore(), difficulty=2)


@pytest.fixture
def services(db, ledger):
    aggregation = BudgetAggregationService(db)
    audit = AuditService(db)
    transactions = TransactionService(db, aggregation, audit, ledger)
    return {
        "aggregation": aggregation,
        "audit": audit,
        "ledger": ledger,
        "transactions": transactions,
    }


async def insert_budget(db, total_budget=1000.0, spent=0.0, name="City Parks"):
    result = await db.budgets.insert_one({
        "name": name,
        "total_budget": total_budget,
        "spent": spent,
        "remaining": total_budget - spent,
        "aggregation_version": 0,
        "status": "ongoing",
        "created_at": datetime.utcnow(),
    })
    return str(result.inserted_id)


async def insert_transactions(db, budget_id, rows, status="approved"):
    """
    Insert (amount, description[, vendor_id]) rows oldest first, one minute apart,
    so the last row is the most recent.
    """
    start = datetime(2025, 1, 1, 9, 0, 0)
    ids = []
    for offset, row in enumerate(rows):
        amount, description = row[0], row[1]
        vendor_id = row[2] if len(row) > 2 else None
        result = await db.transactions.insert_one({
            "budget_id": budget_id,
            "amount": amount,
            "description": description,
            "vendor_id": vendor_id,
            "status": status,
            "created_at": start + timedelta(minutes=offset),
        })
        ids.append(str(result.inserted_id))
    return ids
