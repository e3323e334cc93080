"""Create billing, dunning and inbound event tables.

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c3e5f7b9d2"
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    "subscriptionstatus": ("trialing", "active", "past_due", "paused", "canceled"),
    "invoicestatus": ("open", "paid", "void", "uncollectible"),
    "transactiontype": ("payment", "refund"),
    "transactionstatus": ("pending", "succeeded", "failed"),
    "dunningattemptstatus": ("scheduled", "executed", "abandoned"),
    "eventseverity": ("info", "warning", "error", "critical"),
    "eventsource": ("webhook", "system"),
}


def _enum(name: str):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid_pk():
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _fk(column: str, target: str, nullable: bool = True):
    return sa.Column(
        column,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target),
        nullable=nullable,
    )


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "inbound_events",
        _uuid_pk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("api_version", sa.String(40), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_inbound_events_external_id", "inbound_events", ["external_id"], unique=True)
    op.create_index("ix_inbound_events_event_type", "inbound_events", ["event_type"])

    op.create_table(
        "customers",
        _uuid_pk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_customers_external_id", "customers", ["external_id"], unique=True)
    op.create_index("ix_customers_owner_id", "customers", ["owner_id"])

    op.create_table(
        "subscriptions",
        _uuid_pk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        _fk("customer_id", "customers.id", nullable=False),
        sa.Column("status", _enum("subscriptionstatus"), nullable=True),
        sa.Column("plan_name", sa.String(160), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("billing_interval", sa.String(20), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_timestamp", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_external_id", "subscriptions", ["external_id"], unique=True)
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])

    op.create_table(
        "subscription_state_transitions",
        _uuid_pk(),
        _fk("subscription_id", "subscriptions.id", nullable=False),
        sa.Column("from_status", _enum("subscriptionstatus"), nullable=True),
        sa.Column("to_status", _enum("subscriptionstatus"), nullable=False),
        sa.Column("reason", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_subscription_state_transitions_subscription_id",
        "subscription_state_transitions",
        ["subscription_id"],
    )

    op.create_table(
        "invoices",
        _uuid_pk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        _fk("subscription_id", "subscriptions.id"),
        _fk("customer_id", "customers.id", nullable=False),
        sa.Column("number", sa.String(80), nullable=True),
        sa.Column("status", _enum("invoicestatus"), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("amount_due", sa.Integer(), nullable=True),
        sa.Column("amount_paid", sa.Integer(), nullable=True),
        sa.Column("amount_remaining", sa.Integer(), nullable=True),
        sa.Column("subtotal", sa.Integer(), nullable=True),
        sa.Column("tax", sa.Integer(), nullable=True),
        sa.Column("total", sa.Integer(), nullable=True),
        sa.Column("hosted_invoice_url", sa.Text(), nullable=True),
        sa.Column("invoice_pdf", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_reason", sa.String(80), nullable=True),
        sa.Column("collection_method", sa.String(40), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finalization_error", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_invoices_external_id", "invoices", ["external_id"], unique=True)
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])

    op.create_table(
        "invoice_lines",
        _uuid_pk(),
        _fk("invoice_id", "invoices.id", nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("unit_amount", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])

    op.create_table(
        "dunning_attempts",
        _uuid_pk(),
        _fk("invoice_id", "invoices.id", nullable=False),
        _fk("subscription_id", "subscriptions.id"),
        _fk("customer_id", "customers.id", nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", _enum("dunningattemptstatus"), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_dunning_attempts_invoice_id", "dunning_attempts", ["invoice_id"])
    op.create_index("ix_dunning_attempts_customer_id", "dunning_attempts", ["customer_id"])
    op.create_index("ix_dunning_attempts_status", "dunning_attempts", ["status"])

    op.create_table(
        "transactions",
        _uuid_pk(),
        _fk("customer_id", "customers.id", nullable=False),
        _fk("subscription_id", "subscriptions.id"),
        _fk("invoice_id", "invoices.id"),
        sa.Column("payment_intent_external_id", sa.String(255), nullable=True),
        sa.Column("charge_external_id", sa.String(255), nullable=True),
        sa.Column("transaction_type", _enum("transactiontype"), nullable=True),
        sa.Column("status", _enum("transactionstatus"), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_code", sa.String(120), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("succeeded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_transactions_customer_id", "transactions", ["customer_id"])
    op.create_index("ix_transactions_invoice_id", "transactions", ["invoice_id"])
    op.create_index(
        "ix_transactions_payment_intent_external_id",
        "transactions",
        ["payment_intent_external_id"],
    )
    op.create_index("ix_transactions_charge_external_id", "transactions", ["charge_external_id"])

    op.create_table(
        "billing_history",
        _uuid_pk(),
        _fk("customer_id", "customers.id", nullable=False),
        _fk("subscription_id", "subscriptions.id"),
        _fk("invoice_id", "invoices.id"),
        sa.Column("action", sa.String(80), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_billing_history_customer_id", "billing_history", ["customer_id"])

    op.create_table(
        "disputes",
        _uuid_pk(),
        sa.Column("external_id", sa.String(255), nullable=False),
        _fk("transaction_id", "transactions.id", nullable=False),
        _fk("customer_id", "customers.id", nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("reason", sa.String(120), nullable=True),
        sa.Column("status", sa.String(60), nullable=True),
        sa.Column("evidence_due_by", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_charge_refundable", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_disputes_external_id", "disputes", ["external_id"], unique=True)
    op.create_index("ix_disputes_customer_id", "disputes", ["customer_id"])

    op.create_table(
        "payment_event_logs",
        _uuid_pk(),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("transaction_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("inbound_event_id", sa.String(255), nullable=True),
        sa.Column("event_data", sa.JSON(), nullable=True),
        sa.Column("severity", _enum("eventseverity"), nullable=True),
        sa.Column("source", _enum("eventsource"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_event_logs_event_type", "payment_event_logs", ["event_type"])
    op.create_index("ix_payment_event_logs_customer_id", "payment_event_logs", ["customer_id"])
    op.create_index(
        "ix_payment_event_logs_inbound_event_id", "payment_event_logs", ["inbound_event_id"]
    )
    op.create_index("ix_payment_event_logs_severity", "payment_event_logs", ["severity"])


def downgrade() -> None:
    for table in (
        "payment_event_logs",
        "disputes",
        "billing_history",
        "transactions",
        "dunning_attempts",
        "invoice_lines",
        "invoices",
        "subscription_state_transitions",
        "subscriptions",
        "customers",
        "inbound_events",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
