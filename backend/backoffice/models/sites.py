from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Site(db.Model):
    """
    Physical point of sale with its own inventory and sales scope.

    Products, sales and stock movements all carry a site_id; every read in
    the reporting layer is filtered through the caller's effective scope.
    """
    __tablename__ = "sites"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    address = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Site id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
