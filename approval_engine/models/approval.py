"""
Approval Workflow Engine
Persisted approval chains.

Models:
    - ApprovalChainRecord: one chain per submitted request (invoice, customer
      application, purchase, task completion for one assignee, ...)
    - ApprovalStepRecord: one ordered level of a chain

Polymorphic entity pattern:
    entity_type + entity_id identify the request the chain belongs to.
    entity_id is String(64) so both integer PKs and UUIDs fit.

Concurrency:
    ``version_id`` is SQLAlchemy's optimistic-lock column. Two sessions that
    loaded the same chain cannot both commit a transition; the second flush
    raises StaleDataError, which the service turns into ConflictError.
"""

from datetime import datetime, timezone

from approval_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_KINDS = frozenset({
    "general",
    "purchase",
    "budget",
    "task_completion",
    "customer_onboarding",
    "invoice",
})

# Kinds whose chain always ends with the finance officer
FINANCE_WORKFLOW_KINDS = frozenset({"purchase", "budget", "invoice"})

# Fixed role sequences; the trailing entry of TERMINAL_CAPACITY is forced last
FIXED_CHAIN_SHAPES = {
    "invoice": ("direct_supervisor", "department_head", "business_head", "finance_officer"),
    "customer_onboarding": ("supply_chain_coordinator", "finance_officer", "business_head"),
}
TERMINAL_CAPACITY = {
    "invoice": "finance_officer",
}

# Priority used to pick one primary capacity for a multi-role approver
CAPACITY_PRIORITY = (
    "direct_supervisor",
    "department_head",
    "technical_director",
    "business_head",
    "finance_officer",
    "hse_coordinator",
    "project_manager",
    "supply_chain_coordinator",
    "operations_manager",
)


# Graded completion chains: fixed relationship per level
GRADED_LEVEL_ROLES = ("immediate_supervisor", "supervisor_of_supervisor", "originating_creator")


class ApprovalChainRecord(db.Model):
    """
    Persisted approval chain.

    Business rules (enforced by the domain object, not by the table):
    - current_level is 0 when status is approved / rejected.
    - Step count never changes after creation.
    """

    __tablename__ = "approval_chains"

    id = db.Column(db.Integer, primary_key=True)
    chain_type = db.Column(db.String(20), nullable=False, default="sequential",
                           comment="sequential | graded")
    workflow_kind = db.Column(db.String(30), nullable=False, default="general")

    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)

    requester_key = db.Column(db.String(200), nullable=False, index=True)
    requester_name = db.Column(db.String(200), default="")

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    current_level = db.Column(db.Integer, nullable=False, default=1)

    # Graded chains only
    task_weight = db.Column(db.Float, nullable=True)
    completion_grade = db.Column(db.Float, nullable=True)
    rejection_count = db.Column(db.Integer, nullable=False, default=0)
    last_rejection = db.Column(db.JSON, nullable=True)

    outcome_notified = db.Column(db.Boolean, nullable=False, default=False)
    version_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "ApprovalStepRecord",
        back_populates="chain",
        cascade="all, delete-orphan",
        order_by="ApprovalStepRecord.level",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        db.Index("ix_approval_chain_entity", "entity_type", "entity_id"),
    )

    def step_at(self, level):
        for step in self.steps:
            if step.level == level:
                return step
        return None

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "chain_type": self.chain_type,
            "workflow_kind": self.workflow_kind,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "requester_key": self.requester_key,
            "requester_name": self.requester_name,
            "status": self.status,
            "current_level": self.current_level,
            "task_weight": self.task_weight,
            "completion_grade": self.completion_grade,
            "rejection_count": self.rejection_count,
            "last_rejection": self.last_rejection,
            "outcome_notified": self.outcome_notified,
            "version": self.version_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<ApprovalChainRecord #{self.id} {self.entity_type}/{self.entity_id} {self.status}>"


class ApprovalStepRecord(db.Model):
    """One level of a persisted chain. approver_* fields are build-time snapshots."""

    __tablename__ = "approval_steps"

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(
        db.Integer, db.ForeignKey("approval_chains.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False)

    approver_key = db.Column(db.String(200), nullable=True, index=True)
    approver_name = db.Column(db.String(200), default="")
    approver_department = db.Column(db.String(150), default="")

    capacity = db.Column(db.String(50), nullable=True, comment="Primary capacity")
    capacities = db.Column(db.JSON, default=list, comment="All capacities held at build time")
    level_role = db.Column(db.String(40), nullable=True, comment="Graded chains only")

    status = db.Column(db.String(20), nullable=False, default="pending")
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notification_sent = db.Column(db.Boolean, nullable=False, default=False)

    grade = db.Column(db.Float, nullable=True)
    effective_score = db.Column(db.Float, nullable=True)

    chain = db.relationship("ApprovalChainRecord", back_populates="steps")

    __table_args__ = (
        db.UniqueConstraint("chain_id", "level", name="uq_approval_step_level"),
    )

    def to_dict(self):
        return {
            "level": self.level,
            "approver_key": self.approver_key,
            "approver_name": self.approver_name,
            "approver_department": self.approver_department,
            "capacity": self.capacity,
            "capacities": list(self.capacities or []),
            "level_role": self.level_role,
            "status": self.status,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "notification_sent": self.notification_sent,
            "grade": self.grade,
            "effective_score": self.effective_score,
        }

    def __repr__(self):
        return f"<ApprovalStepRecord chain={self.chain_id} L{self.level} {self.status}>"
