"""
Approval Workflow Engine
Notification domain model.

Models:
    - Notification: in-app message delivered to one approver or requester
"""

from datetime import datetime, timezone

from approval_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"approval", "task"}
NOTIFICATION_SEVERITIES = {"info", "warning", "success"}


class Notification(db.Model):
    """One record per recipient per chain event."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(200), nullable=False, index=True, comment="Identity key")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="approval")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(50), default="", comment="approval_chain/action_item/...")
    entity_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
