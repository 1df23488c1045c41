"""
Approval Workflow Engine
Task-completion and KPI model.

Models:
    - Milestone: progress roll-up target for weighted action items
    - ActionItem: a unit of work with a weight and optional originating project
    - ActionItemAssignee: per-assignee completion state and grade
    - KpiTarget: a KPI whose achievement is fed by graded completions
    - ActionItemKpiLink: declares that an action item contributes to a KPI
"""

from datetime import datetime, timezone

from approval_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTION_ITEM_STATUSES = {"not_started", "in_progress", "pending_completion_approval", "completed"}
COMPLETION_STATUSES = {"pending", "submitted", "approved", "rejected"}
MILESTONE_STATUSES = {"not_started", "in_progress", "completed"}

MAX_ACHIEVEMENT = 100.0


class Milestone(db.Model):
    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    progress = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="not_started")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    action_items = db.relationship("ActionItem", back_populates="milestone", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "progress": self.progress,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ActionItem(db.Model):
    """
    Gradable unit of work.

    originator_key is the creator of the enclosing project; NULL means the
    item is standalone and its graded chains skip level 3.
    """

    __tablename__ = "action_items"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    task_weight = db.Column(db.Float, nullable=False, default=0.0, comment="0–100, share of milestone")
    created_by_key = db.Column(db.String(200), nullable=False)
    originator_key = db.Column(db.String(200), nullable=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    status = db.Column(db.String(40), nullable=False, default="in_progress")
    completion_grade = db.Column(db.Float, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    milestone = db.relationship("Milestone", back_populates="action_items")
    assignees = db.relationship(
        "ActionItemAssignee", back_populates="action_item", cascade="all, delete-orphan",
        order_by="ActionItemAssignee.id",
    )
    kpi_links = db.relationship(
        "ActionItemKpiLink", back_populates="action_item", cascade="all, delete-orphan",
    )

    def assignee_for(self, assignee_key):
        key = (assignee_key or "").strip().lower()
        for a in self.assignees:
            if a.assignee_key == key:
                return a
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "task_weight": self.task_weight,
            "created_by_key": self.created_by_key,
            "originator_key": self.originator_key,
            "milestone_id": self.milestone_id,
            "status": self.status,
            "completion_grade": self.completion_grade,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "assignees": [a.to_dict() for a in self.assignees],
            "kpi_links": [link.to_dict() for link in self.kpi_links],
        }


class ActionItemAssignee(db.Model):
    __tablename__ = "action_item_assignees"

    id = db.Column(db.Integer, primary_key=True)
    action_item_id = db.Column(
        db.Integer, db.ForeignKey("action_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    assignee_key = db.Column(db.String(200), nullable=False)
    completion_status = db.Column(db.String(20), nullable=False, default="pending")
    completion_notes = db.Column(db.Text, nullable=True)
    completion_grade = db.Column(db.Float, nullable=True)
    effective_score = db.Column(db.Float, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    graded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    chain_id = db.Column(
        db.Integer, db.ForeignKey("approval_chains.id", ondelete="SET NULL"), nullable=True,
    )

    action_item = db.relationship("ActionItem", back_populates="assignees")

    __table_args__ = (
        db.UniqueConstraint("action_item_id", "assignee_key", name="uq_action_item_assignee"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "action_item_id": self.action_item_id,
            "assignee_key": self.assignee_key,
            "completion_status": self.completion_status,
            "completion_notes": self.completion_notes,
            "completion_grade": self.completion_grade,
            "effective_score": self.effective_score,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "graded_at": self.graded_at.isoformat() if self.graded_at else None,
            "chain_id": self.chain_id,
        }


class KpiTarget(db.Model):
    """A KPI whose achievement (0–100) accumulates graded task contributions."""

    __tablename__ = "kpi_targets"

    id = db.Column(db.Integer, primary_key=True)
    owner_key = db.Column(db.String(200), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    weight = db.Column(db.Float, nullable=False, default=0.0)
    achievement = db.Column(db.Float, nullable=False, default=0.0)

    def to_dict(self):
        return {
            "id": self.id,
            "owner_key": self.owner_key,
            "title": self.title,
            "weight": self.weight,
            "achievement": self.achievement,
        }


class ActionItemKpiLink(db.Model):
    __tablename__ = "action_item_kpi_links"

    id = db.Column(db.Integer, primary_key=True)
    action_item_id = db.Column(
        db.Integer, db.ForeignKey("action_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    kpi_id = db.Column(
        db.Integer, db.ForeignKey("kpi_targets.id", ondelete="CASCADE"), nullable=False,
    )
    kpi_weight = db.Column(db.Float, nullable=False, default=0.0)
    contribution = db.Column(db.Float, nullable=True, comment="Last contribution applied to the KPI")

    action_item = db.relationship("ActionItem", back_populates="kpi_links")
    kpi = db.relationship("KpiTarget")

    def to_dict(self):
        return {
            "id": self.id,
            "kpi_id": self.kpi_id,
            "kpi_weight": self.kpi_weight,
            "contribution": self.contribution,
        }
