"""
Transaction lifecycle: create, approve / reject, audit trail, ledger recording
"""
import pytest

from budget_service import EntityNotFoundError, AggregationConflictError
from core.financial_precision import NegativeValueError
from transaction_service import InvalidStatusTransitionError, TransactionStatus, compute_transaction_hash
from tests.conftest import insert_budget


async def insert_allocation_chain(db, budget_id):
    """department -> project -> vendor under one budget; returns their ids"""
    department = await db.departments.insert_one({"name": "Parks", "budget_id": budget_id, "budget": 500.0})
    department_id = str(department.inserted_id)
    project = await db.projects.insert_one({"name": "Playground", "department_id": department_id, "budget": 300.0})
    project_id = str(project.inserted_id)
    vendor = await db.vendors.insert_one({"name": "Acme", "project_id": project_id, "allocated_amount": 200.0})
    return department_id, project_id, str(vendor.inserted_id)


def new_transaction(budget_id, amount=125.5, **extra):
    data = {
        "description": "Replacement swings",
        "amount": amount,
        "budget_id": budget_id,
        "category": "equipment",
    }
    data.update(extra)
    return data


class TestCreateTransaction:

    def test_created_pending_with_hash(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            tx = await services["transactions"].create_transaction(new_transaction(budget_id), admin_user)
            logs = await services["audit"].get_audit_logs(entity_type="TRANSACTION")
            return tx, logs

        tx, logs = run(scenario())
        assert tx["status"] == TransactionStatus.PENDING
        assert tx["created_by"] == "admin-1"
        assert len(tx["transaction_hash"]) == 64
        assert tx["blockchain_id"] is None
        assert len(logs) == 1
        assert logs[0]["action_type"] == "CREATE"
        assert logs[0]["entity_id"] == str(tx["_id"])

    def test_receipt_marked_unverified(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            data = new_transaction(budget_id, receipt={"url": "https://files.example.com/r.pdf"})
            return await services["transactions"].create_transaction(data, admin_user)

        receipt = run(scenario())["receipt"]
        assert receipt["verified"] is False
        assert receipt["uploaded_at"] is not None

    @pytest.mark.parametrize("amount", [0, -10])
    def test_non_positive_amount_rejected(self, run, db, services, admin_user, amount):
        async def scenario():
            budget_id = await insert_budget(db)
            await services["transactions"].create_transaction(new_transaction(budget_id, amount), admin_user)

        with pytest.raises(NegativeValueError):
            run(scenario())

    def test_unknown_budget(self, run, services, admin_user):
        with pytest.raises(EntityNotFoundError):
            run(services["transactions"].create_transaction(
                new_transaction("65a000000000000000000000"), admin_user
            ))

    def test_department_from_other_budget_rejected(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            other_budget_id = await insert_budget(db, name="Other")
            result = await db.departments.insert_one(
                {"name": "Roads", "budget_id": other_budget_id, "budget": 100.0}
            )
            data = new_transaction(budget_id, department_id=str(result.inserted_id))
            await services["transactions"].create_transaction(data, admin_user)

        with pytest.raises(ValueError):
            run(scenario())

    def test_vendor_from_other_budget_rejected_without_parents(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            other_budget_id = await insert_budget(db, name="Other")
            _, _, vendor_id = await insert_allocation_chain(db, other_budget_id)
            await services["transactions"].create_transaction(
                new_transaction(budget_id, vendor_id=vendor_id), admin_user
            )

        with pytest.raises(ValueError):
            run(scenario())

    def test_project_contradicting_vendor_rejected(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            _, _, vendor_id = await insert_allocation_chain(db, budget_id)
            _, other_project_id, _ = await insert_allocation_chain(db, budget_id)
            await services["transactions"].create_transaction(
                new_transaction(budget_id, vendor_id=vendor_id, project_id=other_project_id), admin_user
            )

        with pytest.raises(ValueError):
            run(scenario())

    def test_vendor_fills_in_parents_and_rolls_up(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            department_id, project_id, vendor_id = await insert_allocation_chain(db, budget_id)
            service = services["transactions"]
            tx = await service.create_transaction(new_transaction(budget_id, 50.0, vendor_id=vendor_id), admin_user)
            await service.approve_transaction(str(tx["_id"]), admin_user)
            department = await db.departments.find_one({})
            return tx, department, (department_id, project_id)

        tx, department, (department_id, project_id) = run(scenario())
        assert tx["project_id"] == project_id
        assert tx["department_id"] == department_id
        assert department["spent"] == 50.0
        assert department["remaining"] == 450.0

    def test_hash_is_deterministic(self):
        assert compute_transaction_hash("Fuel", 10.0, 1700000000000) == \
            compute_transaction_hash("Fuel", 10.0, 1700000000000)
        assert compute_transaction_hash("Fuel", 10.0, 1700000000000) != \
            compute_transaction_hash("Fuel", 10.0, 1700000000001)


class TestDecisions:

    def test_approve_updates_budget(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            service = services["transactions"]
            tx = await service.create_transaction(new_transaction(budget_id, 125.5), admin_user)
            approved = await service.approve_transaction(str(tx["_id"]), admin_user, "Looks fine")
            budget = await db.budgets.find_one({})
            return approved, budget

        approved, budget = run(scenario())
        assert approved["status"] == TransactionStatus.APPROVED
        assert approved["approved_by"] == "admin-1"
        assert approved["approval_comments"][0]["comment"] == "Looks fine"
        assert budget["spent"] == 125.5
        assert budget["remaining"] == 874.5

    def test_decided_transaction_cannot_change(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            service = services["transactions"]
            tx = await service.create_transaction(new_transaction(budget_id), admin_user)
            await service.approve_transaction(str(tx["_id"]), admin_user)
            await service.reject_transaction(str(tx["_id"]), admin_user, "Too late")

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            run(scenario())
        assert exc_info.value.current_status == TransactionStatus.APPROVED

    def test_reject_leaves_budget_untouched(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db, total_budget=1000.0)
            service = services["transactions"]
            tx = await service.create_transaction(new_transaction(budget_id), admin_user)
            rejected = await service.reject_transaction(str(tx["_id"]), admin_user, "No receipt")
            budget = await services["aggregation"].recalculate_budget(budget_id)
            return rejected, budget

        rejected, budget = run(scenario())
        assert rejected["status"] == TransactionStatus.REJECTED
        assert rejected["rejection_reason"] == "No receipt"
        assert budget["spent"] == 0.0

    def test_roll_up_conflict_keeps_approval_audited(self, run, db, services, admin_user, monkeypatch):
        async def conflicting(transaction, session=None):
            raise AggregationConflictError(f"budget {transaction['budget_id']} kept changing")

        async def scenario():
            budget_id = await insert_budget(db)
            service = services["transactions"]
            tx = await service.create_transaction(new_transaction(budget_id), admin_user)
            monkeypatch.setattr(services["aggregation"], "recalculate_for_transaction", conflicting)
            approved = await service.approve_transaction(str(tx["_id"]), admin_user)
            logs = await services["audit"].get_audit_logs(entity_type="TRANSACTION")
            recorded = await service.record_on_ledger(str(tx["_id"]))
            return approved, logs, recorded

        approved, logs, recorded = run(scenario())
        assert approved["status"] == TransactionStatus.APPROVED
        assert "APPROVE" in [log["action_type"] for log in logs]
        assert recorded["success"] is True

    def test_unknown_transaction(self, run, services, admin_user):
        assert run(services["transactions"].approve_transaction("65a000000000000000000000", admin_user)) is None
        assert run(services["transactions"].reject_transaction("bad-id", admin_user)) is None

    def test_list_filters_by_status(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            service = services["transactions"]
            first = await service.create_transaction(new_transaction(budget_id, 10.0), admin_user)
            await service.create_transaction(new_transaction(budget_id, 20.0), admin_user)
            await service.approve_transaction(str(first["_id"]), admin_user)
            pending = await service.list_transactions(budget_id=budget_id, status="pending")
            everything = await service.list_transactions(budget_id=budget_id)
            return pending, everything

        pending, everything = run(scenario())
        assert [t["amount"] for t in pending] == [20.0]
        assert len(everything) == 2


class TestLedgerRecording:

    def test_record_on_ledger_links_block(self, run, db, services, admin_user):
        async def scenario():
            budget_id = await insert_budget(db)
            service = services["transactions"]
            tx = await service.create_transaction(new_transaction(budget_id), admin_user)
            await service.approve_transaction(str(tx["_id"]), admin_user)
            result = await service.record_on_ledger(str(tx["_id"]))
            stored = await service.get_transaction(str(tx["_id"]))
            entry = await services["ledger"].get_transaction(stored["blockchain_id"])
            return result, stored, entry, await services["ledger"].is_chain_valid()

        result, stored, entry, valid = run(scenario())
        assert result["success"] is True
        assert stored["block_index"] == result["block_index"]
        assert stored["block_hash"] == result["block_hash"]
        assert entry["data"]["transaction_id"] == str(stored["_id"])
        assert entry["data"]["status"] == TransactionStatus.APPROVED
        assert valid is True

    def test_record_unknown_transaction_reports_failure(self, run, services):
        result = run(services["transactions"].record_on_ledger("65a000000000000000000000"))
        assert result["success"] is False
