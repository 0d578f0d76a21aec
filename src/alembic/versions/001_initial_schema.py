"""Initial schema -- all tables, indexes, seed data, and protective triggers.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op

from imagegen.schema_sql import (
    indexes,
    seeds,
    tables_billing,
    tables_core,
    triggers,
)

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    """Execute a list of SQL statements sequentially."""
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    _execute_all(tables_core.ALL)
    _execute_all(tables_billing.ALL)
    _execute_all(tables_core.LEDGER)
    _execute_all(indexes.ALL)
    _execute_all(seeds.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    _drop_triggers()
    _drop_functions()
    _drop_tables()


def _drop_triggers() -> None:
    for table in triggers.TOUCHED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table};")
    op.execute(
        "DROP TRIGGER IF EXISTS trg_credit_transactions_immutable "
        "ON credit_transactions;"
    )
    op.execute(
        "DROP TRIGGER IF EXISTS trg_processed_webhooks_immutable "
        "ON processed_webhooks;"
    )
    op.execute("DROP TRIGGER IF EXISTS trg_bonus_claims_immutable ON bonus_claims;")


def _drop_functions() -> None:
    op.execute("DROP FUNCTION IF EXISTS touch_updated_at();")
    op.execute("DROP FUNCTION IF EXISTS raise_immutable_error();")


def _drop_tables() -> None:
    tables = [
        "credit_transactions",
        "processed_webhooks",
        "referrals",
        "orders",
        "subscriptions",
        "payment_plans",
        "bonus_claims",
        "images",
        "check_in_rewards",
        "user_profiles",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
