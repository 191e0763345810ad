from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from issuance.models.domain import PaymentPolicy, ProposalKind, ProposalStatus


class ProposalLineItemIn(BaseModel):
    service_id: Optional[int] = None
    unit_value: float = Field(0.0, ge=0)


class DiscountFields(BaseModel):
    pay_now_discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    pay_now_discount_value: Optional[float] = Field(None, ge=0)
    pay_later_discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    pay_later_discount_value: Optional[float] = Field(None, ge=0)


class ProposalCreate(DiscountFields):
    client_id: int
    kind: ProposalKind
    line_items: List[ProposalLineItemIn] = Field(..., min_length=1)
    use_fixed_global_value: bool = False
    fixed_global_value: Optional[float] = Field(None, ge=0)
    max_installments: Optional[int] = Field(None, ge=1)
    valid_until: Optional[date] = None
    notes: Optional[str] = None


class ProposalUpdate(DiscountFields):
    client_id: Optional[int] = None
    kind: Optional[ProposalKind] = None
    line_items: Optional[List[ProposalLineItemIn]] = None
    use_fixed_global_value: Optional[bool] = None
    fixed_global_value: Optional[float] = Field(None, ge=0)
    max_installments: Optional[int] = Field(None, ge=1)
    valid_until: Optional[date] = None
    notes: Optional[str] = None


class ProposalLineItemRead(BaseModel):
    id: int
    service_id: int
    position: int
    service_name: str
    service_description: Optional[str] = None
    service_category: Optional[str] = None
    quantity: int
    unit_value: float
    total_value: float
    selected: Optional[bool] = None
    client_notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ProposalRead(DiscountFields):
    id: int
    proposal_number: str
    client_id: int
    kind: ProposalKind
    status: ProposalStatus
    total_value: float
    use_fixed_global_value: bool
    fixed_global_value: Optional[float] = None
    max_installments: int
    valid_until: Optional[date] = None
    notes: Optional[str] = None
    public_token: Optional[str] = None
    sent_at: Optional[datetime] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    signer_document: Optional[str] = None
    client_observations: Optional[str] = None
    signed_at: Optional[datetime] = None
    payment_policy: Optional[PaymentPolicy] = None
    payment_method: Optional[str] = None
    installment_count: Optional[int] = None
    installment_value: Optional[float] = None
    discount_applied: bool = False
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    converted_to_contract_id: Optional[int] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    line_items: List[ProposalLineItemRead] = []

    model_config = ConfigDict(from_attributes=True)


class ProposalLinkRead(BaseModel):
    proposal: ProposalRead
    public_url: str


class ConvertProposalRequest(BaseModel):
    first_installment_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None
    assigned_user_ids: List[int] = []


class ExpireSweepRead(BaseModel):
    expired: int


# Public (token) surface. No internal identifiers beyond the proposal number.


class ValuationRead(BaseModel):
    base_value: float
    payable: float
    discount_applied: bool
    discount_amount: float
    selected_count: int
    line_count: int
    full_acceptance: bool

    model_config = ConfigDict(from_attributes=True)


class PublicLineItemRead(BaseModel):
    position: int
    service_name: str
    service_description: Optional[str] = None
    quantity: int
    unit_value: float
    total_value: float
    selected: Optional[bool] = None
    client_notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PublicProposalRead(DiscountFields):
    proposal_number: str
    status: ProposalStatus
    kind: ProposalKind
    client_name: str
    total_value: float
    use_fixed_global_value: bool
    fixed_global_value: Optional[float] = None
    max_installments: int
    valid_until: Optional[date] = None
    signed_at: Optional[datetime] = None
    payment_policy: Optional[PaymentPolicy] = None
    payment_method: Optional[str] = None
    installment_count: Optional[int] = None
    installment_value: Optional[float] = None
    line_items: List[PublicLineItemRead] = []
    pay_now_preview: Optional[ValuationRead] = None
    pay_later_preview: Optional[ValuationRead] = None


class ServiceSelection(BaseModel):
    position: int = Field(..., ge=1)
    selected: bool
    client_notes: Optional[str] = Field(None, max_length=2000)


class SelectServicesRequest(BaseModel):
    selections: List[ServiceSelection] = Field(..., min_length=1)


class SignProposalRequest(BaseModel):
    signer_name: str = Field(..., min_length=1, max_length=255)
    signer_email: Optional[str] = Field(None, max_length=255)
    signer_phone: Optional[str] = Field(None, max_length=64)
    signer_document: Optional[str] = Field(None, max_length=32)
    signature_data: Optional[str] = None
    client_observations: Optional[str] = Field(None, max_length=5000)
    payment_policy: PaymentPolicy
    payment_method: str = Field(..., min_length=1, max_length=64)
    installments: int = Field(1, ge=1)
    selections: Optional[List[ServiceSelection]] = None


class RejectProposalRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=5000)
