from issuance.models.domain import (  # noqa: F401
    AssignmentRole,
    AuditLog,
    BarterType,
    Client,
    Contract,
    ContractAssignment,
    ContractKind,
    ContractLineItem,
    ContractLineItemAllocation,
    ContractPaymentMethod,
    ContractStatus,
    Installment,
    InstallmentStatus,
    LineItemStatus,
    PaymentPolicy,
    PaymentValueType,
    Proposal,
    ProposalAccessLog,
    ProposalKind,
    ProposalLineItem,
    ProposalStatus,
    RoleName,
    Service,
    User,
)
