from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import load_json


class AdminActionLog(db.Model):
    __tablename__ = "admin_action_logs"

    id = db.Column(db.Integer, primary_key=True)
    admin_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    target_type = db.Column(db.String(40), nullable=False)
    target_id = db.Column(db.String(64), nullable=True)
    details_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "admin_id": int(self.admin_id),
            "action": self.action or "",
            "target_type": self.target_type or "",
            "target_id": self.target_id or "",
            "details": load_json(self.details_json, {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
