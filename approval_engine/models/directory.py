"""
Approval Workflow Engine
Organizational directory model.

Models:
    - Employee: one person with reporting links and declared approval capacities

The engine only reads this table (through ``SqlDirectory``); it is maintained
by the HR side of the platform or seeded from an org-chart file.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from approval_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

APPROVAL_CAPACITIES = frozenset({
    "direct_supervisor",
    "department_head",
    "technical_director",
    "business_head",
    "finance_officer",
    "hse_coordinator",
    "project_manager",
    "supply_chain_coordinator",
    "operations_manager",
    "project_creator",
})


class Employee(db.Model):
    """
    Directory entry for a person who can request or approve.

    ``email`` is the identity key: stored lower-cased, unique.
    ``supervisor_id`` / ``department_head_id`` are self-references; a broken
    or cyclic reporting line is tolerated here and handled by the walk.
    """

    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True, index=True)
    full_name = db.Column(db.String(200), nullable=False)
    department = db.Column(db.String(150), default="")
    position = db.Column(db.String(150), default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    supervisor_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    department_head_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    approval_capacities = db.Column(
        db.JSON, default=list,
        comment="Declared capacities, e.g. ['department_head', 'finance_officer']",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    supervisor = db.relationship(
        "Employee", remote_side=[id], foreign_keys=[supervisor_id], uselist=False,
    )
    department_head = db.relationship(
        "Employee", remote_side=[id], foreign_keys=[department_head_id], uselist=False,
    )

    @validates("email")
    def _normalise_email(self, key, value):
        return (value or "").strip().lower()

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "department": self.department,
            "position": self.position,
            "is_active": self.is_active,
            "supervisor_id": self.supervisor_id,
            "department_head_id": self.department_head_id,
            "approval_capacities": list(self.approval_capacities or []),
        }

    def __repr__(self):
        return f"<Employee {self.id}: {self.email}>"
