"""Initial schema: users, shipments and the shipment timeline.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-19
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("hashed_password", sa.String(255), nullable=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column(
            "role",
            sa.Enum("user", "admin", "prospect", name="userrole"),
            nullable=False,
            server_default="user",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_phone", "users", ["phone"])

    op.create_table(
        "shipments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tracking_number", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("service_type", sa.String(10), nullable=False, server_default="parcel"),
        sa.Column("origin", sa.String(255), nullable=False),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column("shipper_contact", sa.JSON(), nullable=True),
        sa.Column("recipient_contact", sa.JSON(), nullable=True),
        sa.Column("recipient_email", sa.String(255), server_default=""),
        sa.Column("recipient_address", sa.Text(), server_default=""),
        sa.Column("parcel", sa.JSON(), nullable=True),
        sa.Column("freight", sa.JSON(), nullable=True),
        sa.Column("currency", sa.String(3), server_default="EUR"),
        sa.Column("price", sa.Integer(), server_default="0"),
        sa.Column("billable", sa.Float(), server_default="0"),
        sa.Column("eta", sa.String(100), server_default=""),
        sa.Column("eta_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(30), server_default="CREATED"),
        sa.Column("last_location", sa.String(255), server_default=""),
        sa.Column("source", sa.String(20), server_default="web_guest"),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("idempotency_key", name="uq_shipments_idempotency_key"),
    )
    op.create_index("ix_shipments_tracking_number", "shipments", ["tracking_number"], unique=True)
    op.create_index("ix_shipments_user_id", "shipments", ["user_id"])
    op.create_index("ix_shipments_status", "shipments", ["status"])
    op.create_index("ix_shipments_status_created", "shipments", ["status", "created_at"])
    op.create_index("ix_shipments_user_created", "shipments", ["user_id", "created_at"])

    op.create_table(
        "shipment_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "shipment_id",
            sa.String(36),
            sa.ForeignKey("shipments.id"),
            nullable=False,
        ),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("note", sa.Text(), server_default=""),
        sa.Column("at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("shipment_id", "seq", name="uq_shipment_events_shipment_seq"),
    )
    op.create_index("ix_shipment_events_shipment_id", "shipment_events", ["shipment_id"])


def downgrade() -> None:
    op.drop_index("ix_shipment_events_shipment_id", table_name="shipment_events")
    op.drop_table("shipment_events")
    op.drop_index("ix_shipments_user_created", table_name="shipments")
    op.drop_index("ix_shipments_status_created", table_name="shipments")
    op.drop_index("ix_shipments_status", table_name="shipments")
    op.drop_index("ix_shipments_user_id", table_name="shipments")
    op.drop_index("ix_shipments_tracking_number", table_name="shipments")
    op.drop_table("shipments")
    op.drop_index("ix_users_phone", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    sa.Enum(name="userrole").drop(op.get_bind(), checkfirst=True)
