"""
Seed script for the Budget Transparency API.

Creates:
- 1 Admin user (credentials: admin@example.com / admin123)
- 1 Editor user assigned to the sample budget (editor@example.com / editor123)
- 1 Sample budget with one department, project and vendor
- Collection indexes
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

import config
from auth import hash_password
from anomaly_service import AnomalyService
from ledger_service import LedgerService, MongoLedgerStore


async def ensure_user(db, email: str, password: str, name: str, role: str, assigned_budgets=None) -> str:
    existing = await db.users.find_one({"email": email})
    if existing:
        print(f"   ⚠️  {email} already exists. Skipping...")
        return str(existing["_id"])

    result = await db.users.insert_one({
        "name": name,
        "email": email,
        "hashed_password": hash_password(password),
        "role": role,
        "active_status": True,
        "assigned_budgets": assigned_budgets or [],
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow()
    })
    print(f"   ✅ {role} user created: {email} / {password}")
    return str(result.inserted_id)


async def ensure_allocation(db, collection: str, query: dict, doc: dict, amount_field: str) -> str:
    existing = await db[collection].find_one(query)
    if existing:
        return str(existing["_id"])

    doc = {
        **query,
        **doc,
        "spent": 0.0,
        "remaining": doc[amount_field],
        "aggregation_version": 0,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow()
    }
    result = await db[collection].insert_one(doc)
    print(f"   ✅ {collection[:-1]} created: {query['name']}")
    return str(result.inserted_id)


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(config.MONGO_URL)
    db = client[config.DB_NAME]

    print("🌱 Starting database seeding...")

    try:
        # ============================================
        # 1. CREATE ADMIN USER
        # ============================================
        print("👤 Creating admin user...")
        admin_id = await ensure_user(db, "admin@example.com", "admin123", "System Administrator", "admin")

        # ============================================
        # 2. CREATE SAMPLE BUDGET HIERARCHY
        # ============================================
        print("💰 Creating sample budget...")
        budget_id = await ensure_allocation(
            db, "budgets",
            {"name": "Municipal Works 2025"},
            {"total_budget": 1000000.0, "fiscal_year": "2025", "status": "ongoing", "created_by": admin_id},
            "total_budget"
        )
        department_id = await ensure_allocation(
            db, "departments",
            {"name": "Public Works", "budget_id": budget_id},
            {"budget": 400000.0, "status": "active", "created_by": admin_id},
            "budget"
        )
        project_id = await ensure_allocation(
            db, "projects",
            {"name": "Road Resurfacing", "department_id": department_id},
            {"budget": 250000.0, "status": "active", "created_by": admin_id},
            "budget"
        )
        await ensure_allocation(
            db, "vendors",
            {"name": "Acme Paving Ltd", "project_id": project_id},
            {"allocated_amount": 150000.0, "status": "active", "created_by": admin_id},
            "allocated_amount"
        )

        # ============================================
        # 3. CREATE EDITOR USER
        # ============================================
        print("👤 Creating editor user...")
        await ensure_user(db, "editor@example.com", "editor123", "Budget Editor", "editor", [budget_id])

        # ============================================
        # 4. CREATE INDEXES AND GENESIS BLOCK
        # ============================================
        print("📇 Creating database indexes...")

        await db.users.create_index("email", unique=True)
        await db.departments.create_index("budget_id")
        await db.projects.create_index("department_id")
        await db.vendors.create_index("project_id")
        await db.transactions.create_index([("budget_id", 1), ("created_at", -1)])
        await db.transactions.create_index("status")
        await db.audit_logs.create_index([("entity_type", 1), ("entity_id", 1)])
        await db.audit_logs.create_index("timestamp")
        await db.refresh_tokens.create_index("jti", unique=True)

        await AnomalyService(db).create_indexes()
        store = MongoLedgerStore(db)
        await store.create_indexes()
        genesis = await LedgerService(store).ensure_genesis()

        print("   ✅ Indexes created")

        # ============================================
        # SUMMARY
        # ============================================
        print("\n" + "="*60)
        print("✨ DATABASE SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n💰 Sample Budget ID: {budget_id}")
        print(f"🔗 Genesis block hash: {genesis['hash']}")
        print("\n⚠️  SECURITY: Change seeded passwords after first login!")
        print("\n📖 API Documentation: http://localhost:8001/docs")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
