from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime

# ============================================
# USER MODEL
# ============================================
UserRole = Literal["admin", "editor", "public"]

class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: UserRole = "public"
    assigned_budgets: List[str] = []

class UserResponse(BaseModel):
    user_id: str
    name: str
    email: str
    role: str
    active_status: bool
    assigned_budgets: List[str] = []
    created_at: datetime
    updated_at: datetime

class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[UserRole] = None
    active_status: Optional[bool] = None
    assigned_budgets: Optional[List[str]] = None

# ============================================
# BUDGET MODEL
# ============================================
BudgetStatus = Literal["draft", "pending", "approved", "rejected", "ongoing", "finished"]

class BudgetCreate(BaseModel):
    name: str
    total_budget: float = Field(..., gt=0)
    department: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    fiscal_year: Optional[str] = None
    type: Optional[str] = None
    status: BudgetStatus = "draft"

class BudgetUpdate(BaseModel):
    name: Optional[str] = None
    total_budget: Optional[float] = Field(default=None, gt=0)
    fiscal_year: Optional[str] = None
    status: Optional[BudgetStatus] = None

# ============================================
# SUB-ALLOCATION MODELS (Department -> Project -> Vendor)
# ============================================
class DepartmentCreate(BaseModel):
    name: str
    budget_id: str
    budget: float = Field(..., gt=0)
    status: Literal["active", "inactive", "completed"] = "active"

class ProjectCreate(BaseModel):
    name: str
    department_id: str
    budget: float = Field(..., gt=0)
    description: Optional[str] = None
    status: Literal["planning", "active", "completed", "cancelled"] = "planning"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

class VendorCreate(BaseModel):
    name: str
    project_id: str
    allocated_amount: float = Field(..., gt=0)
    contact_person: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    status: Literal["active", "inactive", "blacklisted"] = "active"

# ============================================
# TRANSACTION MODEL
# ============================================
class ReceiptInfo(BaseModel):
    url: str
    public_id: Optional[str] = None
    filename: Optional[str] = None
    mimetype: Optional[str] = None
    size: Optional[int] = None

class TransactionCreate(BaseModel):
    description: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    budget_id: str
    department_id: Optional[str] = None
    project_id: Optional[str] = None
    vendor_id: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    receipt: Optional[ReceiptInfo] = None

class TransactionApprove(BaseModel):
    comment: Optional[str] = None

class TransactionReject(BaseModel):
    reason: Optional[str] = None

# ============================================
# ANOMALY MODELS
# ============================================
class AnomalyResolveRequest(BaseModel):
    resolution: str = Field(..., min_length=3, description="What was found and done")
    outcome: Literal["resolved", "false_positive"] = "resolved"

class AnomalyData(BaseModel):
    threshold: Optional[float] = None
    actual_value: Optional[float] = None
    expected_value: Optional[float] = None
    deviation: Optional[float] = None
    transaction_ids: List[str] = []
    vendor_ids: List[str] = []

class AnomalyResponse(BaseModel):
    id: str
    budget_id: str
    type: str
    severity: str
    title: str
    description: str
    detected_at: datetime
    detected_by: str
    status: str
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None
    data: AnomalyData

# ============================================
# LEDGER MODELS
# ============================================
class LedgerStats(BaseModel):
    total_blocks: int
    total_transactions: int
    pending_transactions: int
    is_chain_valid: bool
    last_block_hash: str
    chain_length: int
    difficulty: int

# ============================================
# AUTH MODELS
# ============================================
class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 1800  # 30 minutes in seconds
    user: UserResponse

class RefreshTokenRequest(BaseModel):
    refresh_token: str

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class AuditLogEntry(BaseModel):
    audit_id: str
    module_name: str
    entity_type: str
    entity_id: str
    action_type: str
    user_id: str
    entity_name: Optional[str] = None
    user_name: Optional[str] = None
    old_value_json: Optional[Dict[str, Any]] = None
    new_value_json: Optional[Dict[str, Any]] = None
    timestamp: datetime
