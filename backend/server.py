from fastapi import FastAPI, APIRouter, HTTPException, status, Depends, BackgroundTasks, Query
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from datetime import datetime
from typing import List, Optional, Dict, Any
import logging

import config
from config import AnomalyThresholds
from models import (
    UserCreate, UserResponse, UserUpdate,
    BudgetCreate, BudgetUpdate,
    DepartmentCreate, ProjectCreate, VendorCreate,
    TransactionCreate, TransactionApprove, TransactionReject,
    AnomalyResolveRequest, AnomalyResponse,
    LedgerStats, AuditLogEntry,
    Token, LoginRequest, RefreshTokenRequest
)
from auth import (
    hash_password, verify_password, create_access_token, create_refresh_token,
    decode_refresh_token, get_current_user
)
from audit_service import AuditService
from budget_service import (
    BudgetAggregationService, EntityNotFoundError,
    AllocationExceededError, AggregationConflictError
)
from anomaly_service import AnomalyService
from ledger_service import LedgerService, MongoLedgerStore
from transaction_service import TransactionService, InvalidStatusTransitionError
from permissions import PermissionChecker
from core.financial_precision import NegativeValueError
from core.serialization import serialize_doc, parse_object_id

# MongoDB connection
client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.DB_NAME]

# Initialize services
audit_service = AuditService(db)
aggregation_service = BudgetAggregationService(db)
anomaly_service = AnomalyService(db, AnomalyThresholds.from_env())
ledger_store = MongoLedgerStore(db)
ledger_service = LedgerService(ledger_store)
transaction_service = TransactionService(db, aggregation_service, audit_service, ledger_service)
permission_checker = PermissionChecker(db)

app = FastAPI(
    title="Budget Transparency API",
    version="1.0.0",
    description="Public budgets, audited spending, anomaly alerts and a hash-chained ledger"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def domain_error_to_http(error: Exception) -> HTTPException:
    """Map service-layer exceptions to HTTP errors"""
    if isinstance(error, EntityNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, AggregationConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, AllocationExceededError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(error), "available": error.available, "limit": error.limit}
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


DOMAIN_ERRORS = (
    EntityNotFoundError, AllocationExceededError, AggregationConflictError,
    InvalidStatusTransitionError, NegativeValueError, ValueError
)


def user_response(user: Dict[str, Any]) -> UserResponse:
    return UserResponse(
        user_id=str(user.get("user_id") or user["_id"]),
        name=user["name"],
        email=user["email"],
        role=user["role"],
        active_status=user["active_status"],
        assigned_budgets=user.get("assigned_budgets", []),
        created_at=user["created_at"],
        updated_at=user["updated_at"]
    )


async def issue_tokens(user: Dict[str, Any]) -> Token:
    user_id = str(user["_id"])
    token_data = {
        "user_id": user_id,
        "email": user["email"],
        "role": user["role"]
    }
    access_token = create_access_token(data=token_data)
    refresh_token = create_refresh_token(user_id=user_id)

    # Store refresh token (for token rotation)
    refresh_payload = decode_refresh_token(refresh_token)
    await db.refresh_tokens.insert_one({
        "jti": refresh_payload["jti"],
        "user_id": user_id,
        "expires_at": datetime.utcfromtimestamp(refresh_payload["exp"]),
        "is_revoked": False,
        "created_at": datetime.utcnow()
    })

    return Token(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=1800,
        user=user_response(user)
    )


async def get_budget_or_404(budget_id: str) -> Dict[str, Any]:
    oid = parse_object_id(budget_id)
    budget = await db.budgets.find_one({"_id": oid}) if oid else None
    if not budget:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    return budget

# ============================================
# AUTHENTICATION ENDPOINTS
# ============================================

@api_router.post("/auth/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(user_data: UserCreate):
    """
    Register a new user.
    First user becomes admin; self-registered users are always public.
    """
    existing_user = await db.users.find_one({"email": user_data.email})
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    is_first_user = await db.users.count_documents({}) == 0

    user_dict = {
        "name": user_data.name,
        "email": user_data.email,
        "hashed_password": hash_password(user_data.password),
        "role": "admin" if is_first_user else "public",
        "active_status": True,
        "assigned_budgets": [],
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow()
    }
    result = await db.users.insert_one(user_dict)
    user_dict["_id"] = result.inserted_id

    logger.info(f"User registered: {user_data.email} role={user_dict['role']}")
    return user_response(user_dict)


@api_router.post("/auth/login", response_model=Token)
async def login(login_data: LoginRequest):
    """Authenticate user and return JWT tokens."""
    user = await db.users.find_one({"email": login_data.email})

    if not user or not verify_password(login_data.password, user["hashed_password"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    if not user.get("active_status", False):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"last_login": datetime.utcnow()}, "$inc": {"login_count": 1}}
    )
    return await issue_tokens(user)


@api_router.post("/auth/refresh", response_model=Token)
async def refresh_access_token(request: RefreshTokenRequest):
    """
    Refresh access token using refresh token.

    Token Rotation: Old refresh token is revoked, new one is issued.
    """
    payload = decode_refresh_token(request.refresh_token)

    revoked = await db.refresh_tokens.find_one_and_update(
        {"jti": payload["jti"], "user_id": payload["user_id"], "is_revoked": False},
        {"$set": {"is_revoked": True}}
    )
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token is invalid or has been revoked"
        )

    user = await db.users.find_one({"_id": ObjectId(payload["user_id"])})
    if not user or not user.get("active_status", False):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    return await issue_tokens(user)

# ============================================
# USER MANAGEMENT ENDPOINTS (admin)
# ============================================

@api_router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(user_data: UserCreate, current_user: dict = Depends(get_current_user)):
    """Create an editor or admin account (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    if await db.users.find_one({"email": user_data.email}):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")

    user_dict = {
        "name": user_data.name,
        "email": user_data.email,
        "hashed_password": hash_password(user_data.password),
        "role": user_data.role,
        "active_status": True,
        "assigned_budgets": user_data.assigned_budgets,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow()
    }
    result = await db.users.insert_one(user_dict)
    user_dict["_id"] = result.inserted_id

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=str(result.inserted_id),
        entity_name=user_data.email,
        action_type="CREATE",
        user_id=user["user_id"],
        user_name=user.get("name"),
        new_value={"role": user_data.role, "assigned_budgets": user_data.assigned_budgets}
    )
    return user_response(user_dict)


@api_router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(user_id: str, update_data: UserUpdate, current_user: dict = Depends(get_current_user)):
    """Change role, status or budget assignments (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    oid = parse_object_id(user_id)
    target = await db.users.find_one({"_id": oid}) if oid else None
    if not target:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    changes = {k: v for k, v in update_data.dict().items() if v is not None}
    changes["updated_at"] = datetime.utcnow()
    await db.users.update_one({"_id": oid}, {"$set": changes})

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=user_id,
        entity_name=target["email"],
        action_type="UPDATE",
        user_id=user["user_id"],
        user_name=user.get("name"),
        old_value={k: target.get(k) for k in changes if k != "updated_at"},
        new_value=changes
    )
    target.update(changes)
    return user_response(target)

# ============================================
# BUDGET ENDPOINTS
# ============================================

@api_router.post("/budgets", status_code=status.HTTP_201_CREATED)
async def create_budget(budget_data: BudgetCreate, current_user: dict = Depends(get_current_user)):
    """Create budget (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    budget_dict = budget_data.dict()
    budget_dict.update({
        "spent": 0.0,
        "remaining": budget_data.total_budget,
        "aggregation_version": 0,
        "created_by": user["user_id"],
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow()
    })
    result = await db.budgets.insert_one(budget_dict)

    await audit_service.log_action(
        module_name="BUDGET_MANAGEMENT",
        entity_type="BUDGET",
        entity_id=str(result.inserted_id),
        entity_name=budget_data.name,
        action_type="CREATE",
        user_id=user["user_id"],
        user_name=user.get("name"),
        new_value={"total_budget": budget_data.total_budget}
    )
    return serialize_doc(budget_dict)


@api_router.get("/budgets")
async def list_budgets(status_filter: Optional[str] = Query(None, alias="status")):
    """Public budget listing"""
    query = {"status": status_filter} if status_filter else {}
    budgets = await db.budgets.find(query).sort("created_at", -1).to_list(length=None)
    return [serialize_doc(b) for b in budgets]


@api_router.get("/budgets/{budget_id}")
async def get_budget(budget_id: str):
    """Budget detail. Totals are reconciled against approved transactions first."""
    await get_budget_or_404(budget_id)
    try:
        budget = await aggregation_service.reconcile_budget(budget_id)
    except AggregationConflictError as e:
        raise domain_error_to_http(e)
    return serialize_doc(budget)


@api_router.put("/budgets/{budget_id}")
async def update_budget(budget_id: str, update_data: BudgetUpdate, current_user: dict = Depends(get_current_user)):
    """Update budget (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)
    budget = await get_budget_or_404(budget_id)

    changes = {k: v for k, v in update_data.dict().items() if v is not None}
    try:
        if "total_budget" in changes:
            await aggregation_service.validate_budget_total(budget_id, changes["total_budget"])

        changes["updated_at"] = datetime.utcnow()
        await db.budgets.update_one({"_id": budget["_id"]}, {"$set": changes})
        updated = await aggregation_service.recalculate_budget(budget_id)
    except DOMAIN_ERRORS as e:
        raise domain_error_to_http(e)

    await audit_service.log_action(
        module_name="BUDGET_MANAGEMENT",
        entity_type="BUDGET",
        entity_id=budget_id,
        entity_name=budget.get("name"),
        action_type="UPDATE",
        user_id=user["user_id"],
        user_name=user.get("name"),
        old_value={k: budget.get(k) for k in changes if k != "updated_at"},
        new_value=changes
    )
    return serialize_doc(updated)


@api_router.get("/budgets/{budget_id}/summary")
async def get_budget_summary(budget_id: str):
    """Spent/remaining totals with per-department breakdown"""
    try:
        summary = await aggregation_service.get_budget_summary(budget_id)
    except AggregationConflictError as e:
        raise domain_error_to_http(e)
    if not summary:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    return summary

# ============================================
# DEPARTMENT / PROJECT / VENDOR ENDPOINTS
# ============================================

async def _create_allocation(
    collection: str,
    entity_type: str,
    payload: Dict[str, Any],
    allocation_field: str,
    validate,
    parent_id: str,
    user: Dict[str, Any]
) -> Dict[str, Any]:
    try:
        await validate(parent_id, payload[allocation_field])
    except DOMAIN_ERRORS as e:
        raise domain_error_to_http(e)

    doc = dict(payload)
    doc.update({
        "spent": 0.0,
        "remaining": payload[allocation_field],
        "aggregation_version": 0,
        "created_by": user["user_id"],
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow()
    })
    result = await db[collection].insert_one(doc)

    await audit_service.log_action(
        module_name="BUDGET_MANAGEMENT",
        entity_type=entity_type,
        entity_id=str(result.inserted_id),
        entity_name=payload.get("name"),
        action_type="CREATE",
        user_id=user["user_id"],
        user_name=user.get("name"),
        new_value={allocation_field: payload[allocation_field]}
    )
    return serialize_doc(doc)


@api_router.post("/departments", status_code=status.HTTP_201_CREATED)
async def create_department(data: DepartmentCreate, current_user: dict = Depends(get_current_user)):
    """Create department; allocation must fit within the budget (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)
    return await _create_allocation(
        "departments", "DEPARTMENT", data.dict(), "budget",
        aggregation_service.validate_department_allocation, data.budget_id, user
    )


@api_router.get("/departments")
async def list_departments(budget_id: Optional[str] = None):
    query = {"budget_id": budget_id} if budget_id else {}
    departments = await db.departments.find(query).to_list(length=None)
    return [serialize_doc(d) for d in departments]


@api_router.post("/projects", status_code=status.HTTP_201_CREATED)
async def create_project(data: ProjectCreate, current_user: dict = Depends(get_current_user)):
    """Create project; allocation must fit within the department (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)
    return await _create_allocation(
        "projects", "PROJECT", data.dict(), "budget",
        aggregation_service.validate_project_allocation, data.department_id, user
    )


@api_router.get("/projects")
async def list_projects(department_id: Optional[str] = None):
    query = {"department_id": department_id} if department_id else {}
    projects = await db.projects.find(query).to_list(length=None)
    return [serialize_doc(p) for p in projects]


@api_router.post("/vendors", status_code=status.HTTP_201_CREATED)
async def create_vendor(data: VendorCreate, current_user: dict = Depends(get_current_user)):
    """Create vendor; allocation must fit within the project (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)
    return await _create_allocation(
        "vendors", "VENDOR", data.dict(), "allocated_amount",
        aggregation_service.validate_vendor_allocation, data.project_id, user
    )


@api_router.get("/vendors")
async def list_vendors(project_id: Optional[str] = None):
    query = {"project_id": project_id} if project_id else {}
    vendors = await db.vendors.find(query).to_list(length=None)
    return [serialize_doc(v) for v in vendors]

# ============================================
# TRANSACTION ENDPOINTS
# ============================================

@api_router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    data: TransactionCreate,
    bg_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user)
):
    """Submit an expense (editor assigned to the budget, or admin). Anomaly checks run afterwards."""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_budget_write_access(user, data.budget_id)

    try:
        transaction = await transaction_service.create_transaction(data.dict(), user)
    except DOMAIN_ERRORS as e:
        raise domain_error_to_http(e)

    bg_tasks.add_task(anomaly_service.run_anomaly_detection, data.budget_id)
    return serialize_doc(transaction)


@api_router.get("/transactions")
async def list_transactions(
    budget_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(pending|approved|rejected)$"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200)
):
    transactions = await transaction_service.list_transactions(budget_id, status_filter, skip, limit)
    return [serialize_doc(t) for t in transactions]


@api_router.get("/transactions/{transaction_id}")
async def get_transaction(transaction_id: str):
    transaction = await transaction_service.get_transaction(transaction_id)
    if not transaction:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return serialize_doc(transaction)


@api_router.post("/transactions/{transaction_id}/approve")
async def approve_transaction(
    transaction_id: str,
    decision: TransactionApprove,
    bg_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user)
):
    """
    Approve a pending transaction (Admin only).
    Ledger recording and anomaly detection run after the response.
    """
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    try:
        transaction = await transaction_service.approve_transaction(transaction_id, user, decision.comment)
    except DOMAIN_ERRORS as e:
        raise domain_error_to_http(e)
    if not transaction:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")

    bg_tasks.add_task(transaction_service.record_on_ledger, transaction_id)
    bg_tasks.add_task(anomaly_service.run_anomaly_detection, transaction["budget_id"])
    return serialize_doc(transaction)


@api_router.post("/transactions/{transaction_id}/reject")
async def reject_transaction(
    transaction_id: str,
    decision: TransactionReject,
    current_user: dict = Depends(get_current_user)
):
    """Reject a pending transaction (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    try:
        transaction = await transaction_service.reject_transaction(transaction_id, user, decision.reason)
    except DOMAIN_ERRORS as e:
        raise domain_error_to_http(e)
    if not transaction:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return serialize_doc(transaction)

# ============================================
# ANOMALY ENDPOINTS
# ============================================

@api_router.get("/budgets/{budget_id}/anomalies", response_model=List[AnomalyResponse])
async def get_active_anomalies(budget_id: str):
    """Open anomalies for a budget, most severe first"""
    anomalies = await anomaly_service.get_active_anomalies(budget_id)
    return [serialize_doc(a) for a in anomalies]


@api_router.get("/anomalies", response_model=List[AnomalyResponse])
async def list_anomalies(
    budget_id: Optional[str] = None,
    status_filter: Optional[str] = Query(
        None, alias="status", pattern="^(active|investigating|resolved|false_positive)$"
    ),
    limit: int = Query(100, ge=1, le=500)
):
    """Anomaly history, newest first, across statuses"""
    anomalies = await anomaly_service.list_anomalies(budget_id, status_filter, limit)
    return [serialize_doc(a) for a in anomalies]


@api_router.post("/budgets/{budget_id}/anomalies/run", response_model=List[AnomalyResponse])
async def run_anomaly_detection(budget_id: str, current_user: dict = Depends(get_current_user)):
    """Run all detectors now (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)
    await get_budget_or_404(budget_id)

    anomalies = await anomaly_service.run_anomaly_detection(budget_id)
    return [serialize_doc(a) for a in anomalies]


@api_router.post("/anomalies/{anomaly_id}/investigate", response_model=AnomalyResponse)
async def investigate_anomaly(anomaly_id: str, current_user: dict = Depends(get_current_user)):
    """Mark an active anomaly as under investigation (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    anomaly = await anomaly_service.start_investigation(anomaly_id, user["user_id"])
    if not anomaly:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Active anomaly not found")
    return serialize_doc(anomaly)


@api_router.post("/anomalies/{anomaly_id}/resolve", response_model=AnomalyResponse)
async def resolve_anomaly(
    anomaly_id: str,
    request: AnomalyResolveRequest,
    current_user: dict = Depends(get_current_user)
):
    """Resolve an anomaly or mark it a false positive (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)

    anomaly = await anomaly_service.resolve_anomaly(
        anomaly_id, user["user_id"], request.resolution, request.outcome
    )
    if not anomaly:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Anomaly not found")

    await audit_service.log_action(
        module_name="ANOMALY_REVIEW",
        entity_type="ANOMALY",
        entity_id=anomaly_id,
        entity_name=anomaly.get("title"),
        action_type="RESOLVE",
        user_id=user["user_id"],
        user_name=user.get("name"),
        new_value={"status": request.outcome, "resolution": request.resolution}
    )
    return serialize_doc(anomaly)

# ============================================
# LEDGER ENDPOINTS
# ============================================

@api_router.get("/ledger/stats", response_model=LedgerStats)
async def get_ledger_stats():
    return await ledger_service.get_stats()


@api_router.get("/ledger/validate")
async def validate_ledger():
    """Integrity self-check of the whole chain"""
    return {"is_chain_valid": await ledger_service.is_chain_valid(), "checked_at": datetime.utcnow()}


@api_router.get("/ledger/transactions/{ledger_transaction_id}")
async def get_ledger_transaction(ledger_transaction_id: str):
    entry = await ledger_service.get_transaction(ledger_transaction_id)
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ledger entry not found")
    return entry


@api_router.get("/ledger/blocks/{index}")
async def get_ledger_block(index: int):
    block = await ledger_service.get_block(index)
    if not block:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Block not found")
    return block

# ============================================
# AUDIT LOG ENDPOINTS
# ============================================

@api_router.get("/audit-logs", response_model=List[AuditLogEntry])
async def get_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(get_current_user)
):
    """Audit trail (Admin only)"""
    user = await permission_checker.get_authenticated_user(current_user)
    await permission_checker.check_admin_role(user)
    return await audit_service.get_audit_logs(entity_type=entity_type, entity_id=entity_id, limit=limit)


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "1.0.0",
        "ledger_difficulty": ledger_service.difficulty
    }


# Include router in main app
app.include_router(api_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def prepare_collections():
    try:
        await ledger_store.create_indexes()
        await anomaly_service.create_indexes()
        await ledger_service.ensure_genesis()
    except Exception as e:
        logger.error(f"Startup preparation failed: {str(e)}")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
