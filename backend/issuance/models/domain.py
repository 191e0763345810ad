from datetime import date, datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from issuance.database import Base


class RoleName(PyEnum):
    admin = "admin"
    comercial = "comercial"
    financeiro = "financeiro"
    operacional = "operacional"


class ProposalKind(PyEnum):
    full_scope = "full_scope"
    one_off = "one_off"
    individual = "individual"


# Contracts share the commercial kinds of the proposals they come from.
ContractKind = ProposalKind


class ProposalStatus(PyEnum):
    draft = "draft"
    sent = "sent"
    signed = "signed"
    rejected = "rejected"
    expired = "expired"
    converted = "converted"
    counterproposal = "counterproposal"


class PaymentPolicy(PyEnum):
    pay_now = "pay_now"
    pay_later = "pay_later"


class ContractStatus(PyEnum):
    active = "active"
    completed = "completed"
    suspended = "suspended"
    cancelled = "cancelled"


class LineItemStatus(PyEnum):
    not_started = "not_started"
    in_progress = "in_progress"
    completed = "completed"


class InstallmentStatus(PyEnum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"


class AssignmentRole(PyEnum):
    owner = "owner"
    editor = "editor"
    viewer = "viewer"


class PaymentValueType(PyEnum):
    percentage = "percentage"
    fixed_value = "fixed_value"


class BarterType(PyEnum):
    percentage = "percentage"
    fixed_value = "fixed_value"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[RoleName] = mapped_column(
        Enum(RoleName, native_enum=False), nullable=False, default=RoleName.comercial
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    payload_json: Mapped[str | None] = mapped_column(Text)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    trade_name: Mapped[str | None] = mapped_column(String(255))
    document: Mapped[str | None] = mapped_column(String(32), index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(64))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Service(Base):
    """Catalog entry; line items snapshot its name/description at creation time."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(128), index=True)
    duration_amount: Mapped[int | None] = mapped_column(Integer)
    duration_unit: Mapped[str | None] = mapped_column(String(32))
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Proposal(Base):
    __tablename__ = "proposals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    kind: Mapped[ProposalKind] = mapped_column(Enum(ProposalKind, native_enum=False), nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        Enum(ProposalStatus, native_enum=False),
        nullable=False,
        default=ProposalStatus.draft,
        index=True,
    )
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    use_fixed_global_value: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fixed_global_value: Mapped[float | None] = mapped_column(Float)

    pay_now_discount_percentage: Mapped[float | None] = mapped_column(Float)
    pay_now_discount_value: Mapped[float | None] = mapped_column(Float)
    pay_later_discount_percentage: Mapped[float | None] = mapped_column(Float)
    pay_later_discount_value: Mapped[float | None] = mapped_column(Float)

    max_installments: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    valid_until: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)

    public_token: Mapped[str | None] = mapped_column(String(128), unique=True, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Captured when the client signs.
    signer_name: Mapped[str | None] = mapped_column(String(255))
    signer_email: Mapped[str | None] = mapped_column(String(255))
    signer_phone: Mapped[str | None] = mapped_column(String(64))
    signer_document: Mapped[str | None] = mapped_column(String(32))
    signer_ip: Mapped[str | None] = mapped_column(String(64))
    signature_data: Mapped[str | None] = mapped_column(Text)
    client_observations: Mapped[str | None] = mapped_column(Text)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    payment_policy: Mapped[PaymentPolicy | None] = mapped_column(
        Enum(PaymentPolicy, native_enum=False)
    )
    payment_method: Mapped[str | None] = mapped_column(String(64))
    installment_count: Mapped[int | None] = mapped_column(Integer)
    installment_value: Mapped[float | None] = mapped_column(Float)
    discount_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    rejection_reason: Mapped[str | None] = mapped_column(Text)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    converted_to_contract_id: Mapped[int | None] = mapped_column(
        ForeignKey("contracts.id", use_alter=True, name="fk_proposals_converted_contract"),
        nullable=True,
    )
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    client = relationship("Client", lazy="joined")
    line_items = relationship(
        "ProposalLineItem",
        back_populates="proposal",
        cascade="all, delete-orphan",
        order_by="ProposalLineItem.position",
    )
    access_logs = relationship(
        "ProposalAccessLog", back_populates="proposal", cascade="all, delete-orphan"
    )

    @validates("max_installments")
    def _validate_max_installments(self, _key, value):
        if value is None:
            return value
        if int(value) < 1:
            raise ValueError("Proposal.max_installments must be >= 1")
        return int(value)


class ProposalLineItem(Base):
    __tablename__ = "proposal_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(
        ForeignKey("proposals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    service_description: Mapped[str | None] = mapped_column(Text)
    service_category: Mapped[str | None] = mapped_column(String(128))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # None until the client interacts with the proposal; treated as selected.
    selected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    client_notes: Mapped[str | None] = mapped_column(Text)

    proposal = relationship("Proposal", back_populates="line_items")

    __table_args__ = (
        UniqueConstraint("proposal_id", "service_id", name="uq_proposal_line_items_service"),
    )


class ProposalAccessLog(Base):
    __tablename__ = "proposal_access_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(
        ForeignKey("proposals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(256))
    accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    proposal = relationship("Proposal", back_populates="access_logs")


class Contract(Base):
    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    kind: Mapped[ContractKind] = mapped_column(Enum(ContractKind, native_enum=False), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ContractStatus.active.value, index=True
    )
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    installment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    installment_value: Mapped[float | None] = mapped_column(Float)
    first_installment_date: Mapped[date | None] = mapped_column(Date)
    barter_type: Mapped[BarterType | None] = mapped_column(Enum(BarterType, native_enum=False))
    barter_value: Mapped[float | None] = mapped_column(Float)
    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    proposal_id: Mapped[int | None] = mapped_column(ForeignKey("proposals.id"), nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    client = relationship("Client", lazy="joined")
    line_items = relationship(
        "ContractLineItem",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="ContractLineItem.id",
    )
    payment_methods = relationship(
        "ContractPaymentMethod",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="ContractPaymentMethod.sort_order",
    )
    installments = relationship(
        "Installment",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="Installment.installment_number",
    )
    assignments = relationship(
        "ContractAssignment", back_populates="contract", cascade="all, delete-orphan"
    )

    @validates("status")
    def _validate_status(self, _key, value: str | ContractStatus | None):
        if value is None:
            return ContractStatus.active.value
        if isinstance(value, ContractStatus):
            value = value.value
        allowed = {s.value for s in ContractStatus}
        if value not in allowed:
            raise ValueError(f"Invalid contract status: {value}")
        return value

    def _validate_invariants(self) -> None:
        if not self.contract_number:
            raise ValueError("Contract.contract_number is required")
        if self.total_value is not None and float(self.total_value) < 0:
            raise ValueError("Contract.total_value must be >= 0")
        if self.installment_count is not None and int(self.installment_count) < 1:
            raise ValueError("Contract.installment_count must be >= 1")


@event.listens_for(Contract, "before_insert")
def _contract_before_insert(_mapper, _connection, target: Contract):
    target._validate_invariants()


@event.listens_for(Contract, "before_update")
def _contract_before_update(_mapper, _connection, target: Contract):
    history = inspect(target).attrs.contract_number.history
    if history.deleted and history.deleted[0] is not None:
        raise ValueError("Contract.contract_number cannot be changed once assigned")
    target._validate_invariants()


class ContractLineItem(Base):
    __tablename__ = "contract_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[LineItemStatus] = mapped_column(
        Enum(LineItemStatus, native_enum=False), nullable=False, default=LineItemStatus.not_started
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    contract = relationship("Contract", back_populates="line_items")
    service = relationship("Service", lazy="joined")
    allocation = relationship(
        "ContractLineItemAllocation",
        back_populates="line_item",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("contract_id", "service_id", name="uq_contract_line_items_service"),
    )

    @property
    def service_name(self) -> str | None:
        return self.service.name if self.service is not None else None


class ContractLineItemAllocation(Base):
    """Cost-centre split for line items of the sub-allocation category."""

    __tablename__ = "contract_line_item_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    line_item_id: Mapped[int] = mapped_column(
        ForeignKey("contract_line_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    administrative: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    commercial: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    operational: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    internship: Mapped[float] = mapped_column(Float, nullable=False, default=50.0)

    line_item = relationship("ContractLineItem", back_populates="allocation")

    @validates("administrative", "commercial", "operational", "internship")
    def _validate_percentage(self, key, value):
        if value is None:
            return value
        if not 0 <= float(value) <= 100:
            raise ValueError(f"ContractLineItemAllocation.{key} must be between 0 and 100")
        return float(value)


class ContractPaymentMethod(Base):
    __tablename__ = "contract_payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False)
    value_type: Mapped[PaymentValueType] = mapped_column(
        Enum(PaymentValueType, native_enum=False), nullable=False
    )
    percentage: Mapped[float | None] = mapped_column(Float)
    fixed_value: Mapped[float | None] = mapped_column(Float)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    contract = relationship("Contract", back_populates="payment_methods")


class Installment(Base):
    __tablename__ = "contract_installments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[InstallmentStatus] = mapped_column(
        Enum(InstallmentStatus, native_enum=False),
        nullable=False,
        default=InstallmentStatus.pending,
        index=True,
    )
    paid_amount: Mapped[float | None] = mapped_column(Float)
    paid_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    contract = relationship("Contract", back_populates="installments")

    __table_args__ = (
        UniqueConstraint("contract_id", "installment_number", name="uq_contract_installments_number"),
    )


class ContractAssignment(Base):
    __tablename__ = "contract_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    role: Mapped[AssignmentRole] = mapped_column(
        Enum(AssignmentRole, native_enum=False), nullable=False, default=AssignmentRole.viewer
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    contract = relationship("Contract", back_populates="assignments")
    user = relationship("User", foreign_keys=[user_id], lazy="joined")

    __table_args__ = (
        UniqueConstraint("contract_id", "user_id", name="uq_contract_assignments_user"),
    )
