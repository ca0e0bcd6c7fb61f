from datetime import datetime

import sqlalchemy as sa

from carmarket.extensions import db


class Category(db.Model):
    """Vehicle category (SUVs, Pickups, Matatus ...). At most two levels: root and child."""

    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(140), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    icon = db.Column(db.String(120), nullable=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def has_children(self) -> bool:
        return db.session.query(Category.id).filter(Category.parent_id == self.id).first() is not None

    def to_dict(self) -> dict:
        data = {key: getattr(self, key) or "" for key in ("name", "slug", "description", "icon")}
        data.update(
            id=int(self.id),
            parent_id=None if self.is_root else int(self.parent_id),
            sort_order=int(self.sort_order or 0),
            is_active=bool(self.is_active),
        )
        return data
