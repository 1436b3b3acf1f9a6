"""
Budget roll-ups: recompute from approved transactions, version guard, allocation limits
"""
import pytest

from budget_service import (
    BudgetAggregationService, AllocationExceededError, AggregationConflictError, EntityNotFoundError
)
from tests.conftest import insert_budget, insert_transactions


@pytest.fixture
def aggregation(db):
    return BudgetAggregationService(db)


async def insert_department(db, budget_id, amount, name="Parks"):
    result = await db.departments.insert_one({"name": name, "budget_id": budget_id, "budget": amount})
    return str(result.inserted_id)


class TestRecalculation:

    def test_spent_counts_only_approved(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await insert_transactions(db, budget_id, [(100.10, "Fuel"), (200.20, "Paint")])
            await insert_transactions(db, budget_id, [(500.0, "Benches")], status="pending")
            await insert_transactions(db, budget_id, [(50.0, "Snacks")], status="rejected")
            return await aggregation.recalculate_budget(budget_id)

        budget = run(scenario())
        assert budget["spent"] == 300.3
        assert budget["remaining"] == 699.7
        assert budget["aggregation_version"] == 1

    def test_unchanged_totals_skip_write(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await aggregation.recalculate_budget(budget_id)
            return await aggregation.recalculate_budget(budget_id)

        assert run(scenario())["aggregation_version"] == 0

    def test_stale_cache_is_reconciled_on_read(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0, spent=999.0)
            await insert_transactions(db, budget_id, [(10.0, "Fuel")])
            return await aggregation.reconcile_budget(budget_id)

        budget = run(scenario())
        assert budget["spent"] == 10.0
        assert budget["remaining"] == 990.0

    def test_missing_entity(self, run, aggregation):
        assert run(aggregation.recalculate_budget("65a000000000000000000000")) is None
        assert run(aggregation.recalculate_budget("garbage")) is None

    def test_lost_version_race_is_retried(self, run, db, aggregation, monkeypatch):
        original = aggregation._approved_total
        calls = []

        async def racing_total(foreign_key, entity_id, session=None):
            calls.append(entity_id)
            if len(calls) == 1:
                # another writer lands between our read and our write
                await db.budgets.update_one({}, {"$inc": {"aggregation_version": 1}})
            return await original(foreign_key, entity_id, session=session)

        monkeypatch.setattr(aggregation, "_approved_total", racing_total)
        monkeypatch.setattr(aggregation, "RETRY_DELAY_MS", 0)

        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await insert_transactions(db, budget_id, [(40.0, "Fuel")])
            return await aggregation.recalculate_budget(budget_id)

        budget = run(scenario())
        assert len(calls) == 2
        assert budget["spent"] == 40.0
        assert budget["aggregation_version"] == 2

    def test_persistent_conflict_raises(self, run, db, aggregation, monkeypatch):
        original = aggregation._approved_total

        async def always_racing(foreign_key, entity_id, session=None):
            await db.budgets.update_one({}, {"$inc": {"aggregation_version": 1}})
            return await original(foreign_key, entity_id, session=session)

        monkeypatch.setattr(aggregation, "_approved_total", always_racing)
        monkeypatch.setattr(aggregation, "RETRY_DELAY_MS", 0)

        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await insert_transactions(db, budget_id, [(40.0, "Fuel")])
            await aggregation.recalculate_budget(budget_id)

        with pytest.raises(AggregationConflictError):
            run(scenario())

    def test_recalculate_for_transaction_updates_hierarchy(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            department_id = await insert_department(db, budget_id, 400.0)
            await db.transactions.insert_one({
                "budget_id": budget_id, "department_id": department_id,
                "amount": 75.0, "status": "approved"
            })
            await aggregation.recalculate_for_transaction(
                {"budget_id": budget_id, "department_id": department_id}
            )
            budget = await aggregation.recalculate_budget(budget_id)
            department = await db.departments.find_one({})
            return budget, department

        budget, department = run(scenario())
        assert budget["spent"] == 75.0
        assert department["spent"] == 75.0
        assert department["remaining"] == 325.0


class TestAllocationLimits:

    def test_department_within_budget(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await insert_department(db, budget_id, 600.0)
            return await aggregation.validate_department_allocation(budget_id, 400.0)

        result = run(scenario())
        assert result == {"allocated": 600.0, "available": 400.0, "limit": 1000.0}

    def test_department_exceeding_budget(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await insert_department(db, budget_id, 600.0)
            await aggregation.validate_department_allocation(budget_id, 400.01)

        with pytest.raises(AllocationExceededError) as exc_info:
            run(scenario())
        assert exc_info.value.available == 400.0
        assert exc_info.value.limit == 1000.0

    def test_excluded_sibling_not_counted(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            department_id = await insert_department(db, budget_id, 600.0)
            return await aggregation.validate_department_allocation(budget_id, 900.0, exclude_id=department_id)

        assert run(scenario())["available"] == 1000.0

    def test_unknown_parent(self, run, aggregation):
        with pytest.raises(EntityNotFoundError):
            run(aggregation.validate_project_allocation("65a000000000000000000000", 10.0))

    def test_vendor_within_project(self, run, db, aggregation):
        async def scenario():
            result = await db.projects.insert_one({"name": "Trail", "department_id": "d1", "budget": 500.0})
            project_id = str(result.inserted_id)
            await db.vendors.insert_one({"name": "Acme", "project_id": project_id, "allocated_amount": 200.0})
            return await aggregation.validate_vendor_allocation(project_id, 300.0)

        assert run(scenario())["available"] == 300.0

    def test_budget_total_cannot_drop_below_departments(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            await insert_department(db, budget_id, 700.0)
            await aggregation.validate_budget_total(budget_id, 800.0)
            await aggregation.validate_budget_total(budget_id, 600.0)

        with pytest.raises(AllocationExceededError):
            run(scenario())


class TestSummary:

    def test_summary_breakdown(self, run, db, aggregation):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            department_id = await insert_department(db, budget_id, 400.0)
            await db.transactions.insert_one({
                "budget_id": budget_id, "department_id": department_id,
                "amount": 100.0, "status": "approved"
            })
            await db.transactions.insert_one({
                "budget_id": budget_id, "amount": 30.0, "status": "pending"
            })
            return await aggregation.get_budget_summary(budget_id)

        summary = run(scenario())
        assert summary["spent"] == 100.0
        assert summary["remaining"] == 900.0
        assert summary["utilisation_percentage"] == 10.0
        assert summary["allocated_to_departments"] == 400.0
        assert summary["unallocated"] == 600.0
        assert summary["departments"][0]["spent"] == 100.0
        assert summary["departments"][0]["utilisation_percentage"] == 25.0
        assert summary["transaction_counts"] == {"pending": 1, "approved": 1, "rejected": 0}

    def test_summary_unknown_budget(self, run, aggregation):
        assert run(aggregation.get_budget_summary("65a000000000000000000000")) is None
