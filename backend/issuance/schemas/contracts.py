from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from issuance.models.domain import (
    AssignmentRole,
    BarterType,
    ContractKind,
    ContractStatus,
    InstallmentStatus,
    LineItemStatus,
    PaymentValueType,
)


class SubAllocationIn(BaseModel):
    administrative: Optional[float] = Field(None, ge=0, le=100)
    commercial: Optional[float] = Field(None, ge=0, le=100)
    operational: Optional[float] = Field(None, ge=0, le=100)
    internship: Optional[float] = Field(None, ge=0, le=100)


class SubAllocationRead(BaseModel):
    administrative: float
    commercial: float
    operational: float
    internship: float

    model_config = ConfigDict(from_attributes=True)


class ContractLineItemIn(BaseModel):
    service_id: Optional[int] = None
    unit_value: float = Field(0.0, ge=0)
    sub_allocations: Optional[SubAllocationIn] = None


class PaymentMethodIn(BaseModel):
    payment_method: str = Field(..., min_length=1, max_length=64)
    value_type: PaymentValueType
    percentage: Optional[float] = Field(None, gt=0, le=100)
    fixed_value: Optional[float] = Field(None, gt=0)


class ContractCreate(BaseModel):
    client_id: int
    kind: ContractKind
    line_items: List[ContractLineItemIn] = Field(..., min_length=1)
    payment_methods: List[PaymentMethodIn] = Field(default_factory=list, max_length=2)
    installment_count: int = Field(1, ge=1)
    first_installment_date: Optional[date] = None
    total_value: Optional[float] = Field(None, ge=0)
    barter_type: Optional[BarterType] = None
    barter_value: Optional[float] = Field(None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None
    assigned_user_ids: List[int] = []


class ContractUpdate(BaseModel):
    line_items: Optional[List[ContractLineItemIn]] = None
    assigned_user_ids: Optional[List[int]] = None
    installment_count: Optional[int] = Field(None, ge=1)
    first_installment_date: Optional[date] = None
    payment_methods: Optional[List[PaymentMethodIn]] = Field(None, max_length=2)
    barter_type: Optional[BarterType] = None
    barter_value: Optional[float] = Field(None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None


class ContractStatusUpdate(BaseModel):
    status: ContractStatus


class ContractLineItemRead(BaseModel):
    id: int
    service_id: int
    service_name: Optional[str] = None
    quantity: int
    unit_value: float
    total_value: float
    status: LineItemStatus
    allocation: Optional[SubAllocationRead] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentMethodRead(BaseModel):
    id: int
    payment_method: str
    value_type: PaymentValueType
    percentage: Optional[float] = None
    fixed_value: Optional[float] = None
    sort_order: int

    model_config = ConfigDict(from_attributes=True)


class InstallmentRead(BaseModel):
    id: int
    contract_id: int
    installment_number: int
    due_date: date
    amount: float
    status: InstallmentStatus
    paid_amount: Optional[float] = None
    paid_date: Optional[date] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class InstallmentStatusUpdate(BaseModel):
    status: InstallmentStatus
    paid_amount: Optional[float] = Field(None, gt=0)
    paid_date: Optional[date] = None


class InstallmentScheduleRequest(BaseModel):
    installment_count: int = Field(..., ge=1)
    first_due_date: date
    interval_days: Optional[int] = Field(None, ge=1)


class InstallmentSummaryRead(BaseModel):
    count: int
    total_amount: float
    paid_amount: float
    pending_amount: float
    overdue_amount: float
    paid_count: int
    pending_count: int
    overdue_count: int

    model_config = ConfigDict(from_attributes=True)


class AssignmentCreate(BaseModel):
    user_id: int
    role: AssignmentRole = AssignmentRole.viewer


class AssignmentRoleUpdate(BaseModel):
    role: AssignmentRole


class AssignmentRead(BaseModel):
    id: int
    contract_id: int
    user_id: int
    role: AssignmentRole
    active: bool
    assigned_by: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ContractSummaryRead(BaseModel):
    id: int
    contract_number: str
    client_id: int
    kind: ContractKind
    status: ContractStatus
    total_value: float
    installment_count: int
    installment_value: Optional[float] = None
    proposal_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ContractRead(ContractSummaryRead):
    first_installment_date: Optional[date] = None
    barter_type: Optional[BarterType] = None
    barter_value: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    updated_at: Optional[datetime] = None
    line_items: List[ContractLineItemRead] = []
    payment_methods: List[PaymentMethodRead] = []
    installments: List[InstallmentRead] = []


class LineItemStatusUpdate(BaseModel):
    status: LineItemStatus
