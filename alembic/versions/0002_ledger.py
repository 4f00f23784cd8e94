"""credit ledger, system config, purchases and analysis requests"""
from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "creditpacket",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("origin", sa.String(length=255), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.UniqueConstraint("origin", "user_id", name="uq_creditpacket_origin_user"),
    )
    op.create_index("ix_creditpacket_user_id", "creditpacket", ["user_id"])
    op.create_index("ix_creditpacket_user_received", "creditpacket", ["user_id", "received_at"])

    op.create_table(
        "systemconfig",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("credit_price", sa.Numeric(10, 4), nullable=False),
        sa.Column("request_price_credits", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("validity_days", sa.Integer(), nullable=False, server_default="365"),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("effective_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "configpointer",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("config_id", sa.Integer(), sa.ForeignKey("systemconfig.id"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "purchase",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("stripe_session_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("payment_intent_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_purchase_user_id", "purchase", ["user_id"])
    op.create_index("ix_purchase_payment_intent_id", "purchase", ["payment_intent_id"])

    op.create_table(
        "revenue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_revenue_user_id", "revenue", ["user_id"])

    op.create_table(
        "product",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
    )
    op.create_index("ix_product_name", "product", ["name"], unique=True)

    op.create_table(
        "analysisrequest",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("chemical_product_id", sa.Integer(), sa.ForeignKey("product.id"), nullable=False),
        sa.Column("biological_product_id", sa.Integer(), sa.ForeignKey("product.id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="em_andamento"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_result", sa.Text(), nullable=True),
        sa.Column("result_description", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("result_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_analysisrequest_user_id", "analysisrequest", ["user_id"])
    op.create_index("ix_analysisrequest_user_requested", "analysisrequest", ["user_id", "requested_at"])


def downgrade() -> None:
    op.drop_table("analysisrequest")
    op.drop_table("product")
    op.drop_table("revenue")
    op.drop_table("purchase")
    op.drop_table("configpointer")
    op.drop_table("systemconfig")
    op.drop_table("creditpacket")
