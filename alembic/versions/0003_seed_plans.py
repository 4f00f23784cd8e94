"""seed plans and initial system config"""
from decimal import Decimal

from alembic import op
import sqlalchemy as sa

revision = "0003"
down_revision = "0002"
branch_labels = None
depends_on = None

plan_table = sa.table(
    "plan",
    sa.column("id", sa.Integer),
    sa.column("name", sa.String),
    sa.column("time_priority", sa.Integer),
    sa.column("monthly_credits", sa.Integer),
    sa.column("monthly_price", sa.Numeric),
    sa.column("max_members", sa.Integer),
)
config_table = sa.table(
    "systemconfig",
    sa.column("id", sa.Integer),
    sa.column("credit_price", sa.Numeric),
    sa.column("request_price_credits", sa.Integer),
    sa.column("validity_days", sa.Integer),
    sa.column("description", sa.String),
)
pointer_table = sa.table(
    "configpointer",
    sa.column("id", sa.Integer),
    sa.column("config_id", sa.Integer),
)


def upgrade() -> None:
    op.bulk_insert(
        plan_table,
        [
            {"id": 1, "name": "Básico", "time_priority": 0, "monthly_credits": 10, "monthly_price": Decimal("49.90"), "max_members": 0},
            {"id": 2, "name": "Profissional", "time_priority": 1, "monthly_credits": 50, "monthly_price": Decimal("199.90"), "max_members": 0},
            {"id": 3, "name": "Enterprise", "time_priority": 2, "monthly_credits": 200, "monthly_price": Decimal("699.90"), "max_members": 10},
        ],
    )
    op.bulk_insert(
        config_table,
        [{"id": 1, "credit_price": Decimal("2.00"), "request_price_credits": 1, "validity_days": 365, "description": "Configuração inicial"}],
    )
    op.bulk_insert(pointer_table, [{"id": 1, "config_id": 1}])


def downgrade() -> None:
    op.execute(sa.text("DELETE FROM configpointer WHERE id = 1"))
    op.execute(sa.text("DELETE FROM systemconfig WHERE id = 1"))
    op.execute(sa.text("DELETE FROM plan WHERE id IN (1, 2, 3)"))
