"""Record per sale item whether its stock was decremented

Revision ID: 20261019_item_stock_applied
Revises: 20261018_initial
Create Date: 2026-10-19

Backfill: items of reconciled sales got their stock applied unless they were
cancelled and never restored (cancelled before the reconcile ran).
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_item_stock_applied"
down_revision = "20261018_initial"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("sale_items", schema=None) as batch_op:
        batch_op.add_column(sa.Column("stock_applied_at", sa.DateTime(timezone=True), nullable=True))

    op.execute(
        """
        UPDATE sale_items
        SET stock_applied_at = (
            SELECT sales.stock_reconciled_at FROM sales WHERE sales.id = sale_items.sale_id
        )
        WHERE (is_cancelled = false OR stock_restored_at IS NOT NULL)
          AND sale_id IN (SELECT id FROM sales WHERE stock_reconciled_at IS NOT NULL)
        """
    )


def downgrade():
    with op.batch_alter_table("sale_items", schema=None) as batch_op:
        batch_op.drop_column("stock_applied_at")
