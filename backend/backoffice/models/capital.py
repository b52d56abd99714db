from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CAPITAL_INVESTMENT = "investment"
CAPITAL_WITHDRAWAL = "withdrawal"


class CapitalTransaction(db.Model):
    """
    Manual investment or withdrawal of cash.

    Append-only: a mistake is corrected with an offsetting transaction,
    never an edit or delete. site_id NULL means the transaction applies to
    the business as a whole.
    """
    __tablename__ = "capital_transactions"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_capital_transactions_amount_positive"),
        db.CheckConstraint("type IN ('investment', 'withdrawal')", name="ck_capital_transactions_type"),
        db.Index("ix_capital_transactions_site_type", "site_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def signed_amount_cents(self) -> int:
        return self.amount_cents if self.type == CAPITAL_INVESTMENT else -self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "amount_cents": self.amount_cents,
            "type": self.type,
            "description": self.description,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
