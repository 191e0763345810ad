"""init issuance tables

Revision ID: 20261019_0001_init_issuance_tables
Revises: None
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001_init_issuance_tables"
down_revision = None
branch_labels = None
depends_on = None


def _enum(*values: str, name: str) -> sa.Enum:
    # Stored as VARCHAR everywhere so new members never need ALTER TYPE.
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=False)


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return cols


def upgrade() -> None:
    role_enum = _enum("admin", "comercial", "financeiro", "operacional", name="rolename")
    kind_enum = _enum("full_scope", "one_off", "individual", name="proposalkind")
    proposal_status_enum = _enum(
        "draft",
        "sent",
        "signed",
        "rejected",
        "expired",
        "converted",
        "counterproposal",
        name="proposalstatus",
    )
    policy_enum = _enum("pay_now", "pay_later", name="paymentpolicy")
    line_status_enum = _enum("not_started", "in_progress", "completed", name="lineitemstatus")
    installment_status_enum = _enum("pending", "paid", "overdue", name="installmentstatus")
    assignment_role_enum = _enum("owner", "editor", "viewer", name="assignmentrole")
    value_type_enum = _enum("percentage", "fixed_value", name="paymentvaluetype")
    barter_enum = _enum("percentage", "fixed_value", name="bartertype")

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("role", role_enum, nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payload_json", sa.Text()),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=256), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index(
        "ix_audit_logs_idempotency_key", "audit_logs", ["idempotency_key"], unique=True
    )

    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("trade_name", sa.String(length=255)),
        sa.Column("document", sa.String(length=32)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("phone", sa.String(length=64)),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_clients_name", "clients", ["name"])
    op.create_index("ix_clients_document", "clients", ["document"])

    op.create_table(
        "services",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(length=128)),
        sa.Column("duration_amount", sa.Integer()),
        sa.Column("duration_unit", sa.String(length=32)),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_services_category", "services", ["category"])
    op.create_index("ix_services_active", "services", ["active"])

    op.create_table(
        "proposals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("proposal_number", sa.String(length=32), nullable=False),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("kind", kind_enum, nullable=False),
        sa.Column("status", proposal_status_enum, nullable=False, server_default="draft"),
        sa.Column("total_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("use_fixed_global_value", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fixed_global_value", sa.Float()),
        sa.Column("pay_now_discount_percentage", sa.Float()),
        sa.Column("pay_now_discount_value", sa.Float()),
        sa.Column("pay_later_discount_percentage", sa.Float()),
        sa.Column("pay_later_discount_value", sa.Float()),
        sa.Column("max_installments", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("valid_until", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("public_token", sa.String(length=128)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("signer_name", sa.String(length=255)),
        sa.Column("signer_email", sa.String(length=255)),
        sa.Column("signer_phone", sa.String(length=64)),
        sa.Column("signer_document", sa.String(length=32)),
        sa.Column("signer_ip", sa.String(length=64)),
        sa.Column("signature_data", sa.Text()),
        sa.Column("client_observations", sa.Text()),
        sa.Column("signed_at", sa.DateTime(timezone=True)),
        sa.Column("payment_policy", policy_enum),
        sa.Column("payment_method", sa.String(length=64)),
        sa.Column("installment_count", sa.Integer()),
        sa.Column("installment_value", sa.Float()),
        sa.Column("discount_applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        # FK to contracts is added once that table exists.
        sa.Column("converted_to_contract_id", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id")),
        *_timestamps(updated=True),
    )
    op.create_index("ix_proposals_proposal_number", "proposals", ["proposal_number"], unique=True)
    op.create_index("ix_proposals_client_id", "proposals", ["client_id"])
    op.create_index("ix_proposals_status", "proposals", ["status"])
    op.create_index("ix_proposals_public_token", "proposals", ["public_token"], unique=True)

    op.create_table(
        "proposal_line_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "proposal_id",
            sa.Integer(),
            sa.ForeignKey("proposals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("service_id", sa.Integer(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("service_name", sa.String(length=255), nullable=False),
        sa.Column("service_description", sa.Text()),
        sa.Column("service_category", sa.String(length=128)),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("selected", sa.Boolean(), nullable=True),
        sa.Column("client_notes", sa.Text()),
        sa.UniqueConstraint("proposal_id", "service_id", name="uq_proposal_line_items_service"),
    )
    op.create_index("ix_proposal_line_items_proposal_id", "proposal_line_items", ["proposal_id"])

    op.create_table(
        "proposal_access_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "proposal_id",
            sa.Integer(),
            sa.ForeignKey("proposals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("ip_address", sa.String(length=64)),
        sa.Column("user_agent", sa.String(length=256)),
        sa.Column("accessed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_proposal_access_logs_proposal_id", "proposal_access_logs", ["proposal_id"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("contract_number", sa.String(length=32), nullable=False),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("kind", kind_enum, nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("total_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("installment_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("installment_value", sa.Float()),
        sa.Column("first_installment_date", sa.Date()),
        sa.Column("barter_type", barter_enum),
        sa.Column("barter_value", sa.Float()),
        sa.Column("start_date", sa.Date()),
        sa.Column("end_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("proposal_id", sa.Integer(), sa.ForeignKey("proposals.id"), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id")),
        *_timestamps(updated=True),
    )
    op.create_index("ix_contracts_contract_number", "contracts", ["contract_number"], unique=True)
    op.create_index("ix_contracts_client_id", "contracts", ["client_id"])
    op.create_index("ix_contracts_status", "contracts", ["status"])

    with op.batch_alter_table("proposals") as batch:
        batch.create_foreign_key(
            "fk_proposals_converted_contract",
            "contracts",
            ["converted_to_contract_id"],
            ["id"],
        )

    op.create_table(
        "contract_line_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id",
            sa.Integer(),
            sa.ForeignKey("contracts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("service_id", sa.Integer(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", line_status_enum, nullable=False, server_default="not_started"),
        *_timestamps(),
        sa.UniqueConstraint("contract_id", "service_id", name="uq_contract_line_items_service"),
    )
    op.create_index("ix_contract_line_items_contract_id", "contract_line_items", ["contract_id"])

    op.create_table(
        "contract_line_item_allocations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "line_item_id",
            sa.Integer(),
            sa.ForeignKey("contract_line_items.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("administrative", sa.Float(), nullable=False, server_default="100"),
        sa.Column("commercial", sa.Float(), nullable=False, server_default="100"),
        sa.Column("operational", sa.Float(), nullable=False, server_default="100"),
        sa.Column("internship", sa.Float(), nullable=False, server_default="50"),
    )

    op.create_table(
        "contract_payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id",
            sa.Integer(),
            sa.ForeignKey("contracts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_method", sa.String(length=64), nullable=False),
        sa.Column("value_type", value_type_enum, nullable=False),
        sa.Column("percentage", sa.Float()),
        sa.Column("fixed_value", sa.Float()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        "ix_contract_payment_methods_contract_id", "contract_payment_methods", ["contract_id"]
    )

    op.create_table(
        "contract_installments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id",
            sa.Integer(),
            sa.ForeignKey("contracts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("status", installment_status_enum, nullable=False, server_default="pending"),
        sa.Column("paid_amount", sa.Float()),
        sa.Column("paid_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        *_timestamps(updated=True),
        sa.UniqueConstraint(
            "contract_id", "installment_number", name="uq_contract_installments_number"
        ),
    )
    op.create_index("ix_contract_installments_contract_id", "contract_installments", ["contract_id"])
    op.create_index("ix_contract_installments_due_date", "contract_installments", ["due_date"])
    op.create_index("ix_contract_installments_status", "contract_installments", ["status"])

    op.create_table(
        "contract_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id",
            sa.Integer(),
            sa.ForeignKey("contracts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", assignment_role_enum, nullable=False, server_default="viewer"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("assigned_by", sa.Integer(), sa.ForeignKey("users.id")),
        *_timestamps(updated=True),
        sa.UniqueConstraint("contract_id", "user_id", name="uq_contract_assignments_user"),
    )
    op.create_index("ix_contract_assignments_contract_id", "contract_assignments", ["contract_id"])
    op.create_index("ix_contract_assignments_user_id", "contract_assignments", ["user_id"])


def downgrade() -> None:
    op.drop_table("contract_assignments")
    op.drop_table("contract_installments")
    op.drop_table("contract_payment_methods")
    op.drop_table("contract_line_item_allocations")
    op.drop_table("contract_line_items")
    with op.batch_alter_table("proposals") as batch:
        batch.drop_constraint("fk_proposals_converted_contract", type_="foreignkey")
    op.drop_table("contracts")
    op.drop_table("proposal_access_logs")
    op.drop_table("proposal_line_items")
    op.drop_table("proposals")
    op.drop_table("services")
    op.drop_table("clients")
    op.drop_table("audit_logs")
    op.drop_table("users")
