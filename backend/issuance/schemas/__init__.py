from issuance.schemas.auth import Token, UserRead  # noqa: F401
from issuance.schemas.contracts import (  # noqa: F401
    AssignmentCreate,
    AssignmentRead,
    AssignmentRoleUpdate,
    ContractCreate,
    ContractLineItemIn,
    ContractLineItemRead,
    ContractRead,
    ContractStatusUpdate,
    ContractSummaryRead,
    ContractUpdate,
    InstallmentRead,
    InstallmentScheduleRequest,
    InstallmentStatusUpdate,
    InstallmentSummaryRead,
    LineItemStatusUpdate,
    PaymentMethodIn,
    PaymentMethodRead,
    SubAllocationIn,
    SubAllocationRead,
)
from issuance.schemas.proposals import (  # noqa: F401
    ConvertProposalRequest,
    ExpireSweepRead,
    ProposalCreate,
    ProposalLineItemIn,
    ProposalLineItemRead,
    ProposalLinkRead,
    ProposalRead,
    ProposalUpdate,
    PublicLineItemRead,
    PublicProposalRead,
    RejectProposalRequest,
    SelectServicesRequest,
    ServiceSelection,
    SignProposalRequest,
    ValuationRead,
)
