from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Annotated, List, Optional

class AllocationStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    PAID = "paid"
    CANCELLED = "cancelled"

Money = Annotated[Decimal, Field(gt=0, max_digits=14, decimal_places=2)]
Percentage = Annotated[Decimal, Field(ge=0, le=100, max_digits=5, decimal_places=2)]

class AllocationCreate(BaseModel):
    user_id: int = Field(ge=1)
    flow_id: Optional[int] = Field(default=None, ge=1)
    allocated_amount: Money
    percentage: Optional[Percentage] = None
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)

class AllocationUpdate(BaseModel):
    """Partial update; fields left out (or null) keep their stored value."""
    allocated_amount: Optional[Money] = None
    percentage: Optional[Percentage] = None
    flow_id: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    status: Optional[AllocationStatus] = None

class BulkAllocationRequest(BaseModel):
    allocations: List[AllocationCreate]

class AllocationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payout_request_id: int
    user_id: int
    flow_id: Optional[int] = None
    allocated_amount: Decimal
    percentage: Optional[Decimal] = None
    currency: str
    status: AllocationStatus
    description: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class AllocationView(AllocationRecord):
    """Allocation enriched with user and flow display fields."""
    username: Optional[str] = None
    user_full_name: Optional[str] = None
    telegram_id: Optional[str] = None
    flow_name: Optional[str] = None
    flow_status: Optional[str] = None
    created_by_username: Optional[str] = None
    updated_by_username: Optional[str] = None

class AllocationStats(BaseModel):
    total_allocations: int = 0
    total_allocated: Decimal = Decimal("0.00")
    avg_allocation: Decimal = Decimal("0.00")
    unique_users: int = 0
    payout_total: Decimal = Decimal("0.00")
    allocation_percentage: Decimal = Decimal("0.00")
    draft_count: int = 0
    confirmed_count: int = 0
    paid_count: int = 0
    cancelled_count: int = 0

class PayoutRequestInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    total_amount: Decimal
    currency: str
    status: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None

class FlowUserAllocation(BaseModel):
    id: int
    allocated_amount: Decimal
    percentage: Optional[Decimal] = None
    status: AllocationStatus
    description: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

class FlowUser(BaseModel):
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    telegram_id: Optional[str] = None
    flow_status: Optional[str] = None
    allocation: Optional[FlowUserAllocation] = None
    has_allocation: bool = False

class FlowWithUsers(BaseModel):
    id: int
    name: str
    status: Optional[str] = None
    cpa: Optional[Decimal] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    payout_amount: Optional[Decimal] = None
    conversions: Optional[int] = None
    users: List[FlowUser] = Field(default_factory=list)

class UsersForAllocation(BaseModel):
    payout_request: PayoutRequestInfo
    flows: List[FlowWithUsers]

class UserPeriodAllocation(AllocationRecord):
    payout_request_status: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None

class UserPeriodAllocations(BaseModel):
    user_id: int
    allocations: List[UserPeriodAllocation]
    total_allocated: Decimal
