"""
Graded completion chain — three fixed levels that grade an assignee's work.

    Level 1  immediate_supervisor       the assignee's supervisor
    Level 2  supervisor_of_supervisor   that supervisor's supervisor
    Level 3  originating_creator        creator of the enclosing project
                                        (skipped when the item is standalone)

Each level records a 1.0–5.0 grade (one decimal) and an effective score
scaled by the task weight. A rejection at any level throws away every grade
and restarts the chain at its first non-skipped level; the chain itself
stays pending so the assignee can resubmit.

KPI arithmetic lives here as plain functions so both the chain and the
task-completion service use one definition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from approval_engine.core.exceptions import (
    EmptyChainError,
    InvalidGradeError,
    ValidationError,
)
from approval_engine.models.approval import GRADED_LEVEL_ROLES
from approval_engine.models.performance import MAX_ACHIEVEMENT
from approval_engine.services.approval_chain import (
    ApprovalChain,
    ApprovalStep,
    Transition,
    normalise_decision,
)

logger = logging.getLogger(__name__)

MIN_GRADE = 1.0
MAX_GRADE = 5.0


# ── Grade & KPI arithmetic ───────────────────────────────────────────────────


def validate_grade(grade) -> float:
    """Return ``grade`` as a float or raise InvalidGradeError."""
    if grade is None or isinstance(grade, bool):
        raise InvalidGradeError(grade, "A numeric grade is required")
    try:
        value = float(grade)
    except (TypeError, ValueError):
        raise InvalidGradeError(grade, "A numeric grade is required")
    if not (MIN_GRADE <= value <= MAX_GRADE):
        raise InvalidGradeError(grade)
    if abs(value * 10 - round(value * 10)) > 1e-9:
        raise InvalidGradeError(grade, "Grade allows at most one decimal place")
    return round(value, 1)


def effective_score(grade: float, task_weight: float) -> float:
    """Grade scaled by the task's weight: round(grade / 5 * weight, 2)."""
    return round(grade / MAX_GRADE * task_weight, 2)


def kpi_contribution(grade: float, kpi_weight: float) -> float:
    """Achievement points one graded task adds to a linked KPI."""
    return round(grade / MAX_GRADE * kpi_weight / 100 * 100, 2)


def apply_contribution(achievement: float, contribution: float) -> float:
    """Add ``contribution`` and clamp the running achievement to 100."""
    return min(MAX_ACHIEVEMENT, round((achievement or 0.0) + contribution, 2))


def mean_grade(grades) -> float | None:
    values = [g for g in grades if g is not None]
    if not values:
        return None
    return round(sum(values) / len(values), 2)


# ═════════════════════════════════════════════════════════════════════════════
# Graded step & chain
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class GradedApprovalStep(ApprovalStep):
    level_role: str = ""
    grade: float | None = None
    effective_score: float | None = None

    def clear_decision(self) -> None:
        super().clear_decision()
        self.grade = None
        self.effective_score = None

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "level_role": self.level_role,
            "grade": self.grade,
            "effective_score": self.effective_score,
        })
        return d

    @classmethod
    def _init_kwargs(cls, data: dict) -> dict:
        kwargs = super()._init_kwargs(data)
        kwargs.update({
            "level_role": data.get("level_role") or "",
            "grade": data.get("grade"),
            "effective_score": data.get("effective_score"),
        })
        return kwargs


class GradedCompletionChain(ApprovalChain):
    """ApprovalChain with exactly three role-bound, graded levels."""

    chain_type = "graded"
    step_class = GradedApprovalStep

    def __init__(
        self,
        steps,
        *,
        task_weight: float = 0.0,
        completion_grade: float | None = None,
        rejection_count: int = 0,
        last_rejection: dict | None = None,
        workflow_kind: str = "task_completion",
        **kwargs,
    ):
        steps = sorted(steps, key=lambda s: s.level)
        roles = tuple(s.level_role for s in steps)
        if roles != GRADED_LEVEL_ROLES:
            raise ValidationError(
                f"A graded chain needs levels {GRADED_LEVEL_ROLES} (got {roles})"
            )
        if all(s.status == "skipped" for s in steps):
            requester = kwargs.get("requester")
            raise EmptyChainError(requester.key if requester else "", workflow_kind)
        if task_weight is None or not (0 <= float(task_weight) <= 100):
            raise ValidationError(
                f"task_weight must be between 0 and 100 (got {task_weight!r})",
                details={"task_weight": "out of range"},
            )
        super().__init__(steps, workflow_kind=workflow_kind, **kwargs)
        self.task_weight = float(task_weight)
        self.completion_grade = completion_grade
        self.rejection_count = rejection_count
        self.last_rejection = last_rejection

    # ── Grading ──────────────────────────────────────────────────────────

    def grade_level(self, level: int, acting, grade, comment: str | None = None, *, now=None) -> Transition:
        """Grade the active level and advance.

        Raises:
            NotPendingError: chain already approved.
            ValidationError: ``level`` is not the active level.
            NotAuthorizedError: ``acting`` is not the active approver.
            InvalidGradeError: grade missing, out of range or too precise.
        """
        with self._lock:
            step = self._authorize_level(level, acting)
            value = validate_grade(grade)
            step.grade = value
            step.effective_score = effective_score(value, self.task_weight)
            transition = self._approve_step(step, comment, now or datetime.now(timezone.utc))
        logger.debug(
            "Graded level %d with %.1f", level, value,
            extra={"chain_id": self.chain_id, "level": level, "approver_key": step.approver_key},
        )
        return transition

    def reject_level(self, level: int, acting, comment: str | None = None, *, now=None) -> Transition:
        """Reject at ``level``: every non-skipped level returns to pending."""
        with self._lock:
            step = self._authorize_level(level, acting)
            now = now or datetime.now(timezone.utc)
            self.last_rejection = {
                "level": step.level,
                "level_role": step.level_role,
                "approver_key": step.approver_key,
                "comment": comment,
                "rejected_at": now.isoformat(),
            }
            self.rejection_count += 1
            for s in self._steps:
                if s.status != "skipped":
                    s.clear_decision()
            self.completion_grade = None
            self.current_level = self._next_pending_level(0)
            return Transition(
                outcome="rejected", chain_status=self.status, step=step, comment=comment,
            )

    def decide(self, acting, decision: str, comment: str | None = None, *, now=None) -> Transition:
        if normalise_decision(decision) == "reject":
            return self.reject_level(self.current_level, acting, comment, now=now)
        raise InvalidGradeError(None, "A grade is required to approve a graded level")

    def _authorize_level(self, level: int, acting) -> GradedApprovalStep:
        step = self._authorize(acting)
        if level != self.current_level:
            raise ValidationError(
                f"Level {level} is not the active level (active={self.current_level})",
                details={"level": "not active"},
            )
        return step

    def _on_completed(self) -> None:
        self.completion_grade = mean_grade(s.grade for s in self._steps)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "task_weight": self.task_weight,
            "completion_grade": self.completion_grade,
            "rejection_count": self.rejection_count,
            "last_rejection": self.last_rejection,
        })
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "GradedCompletionChain":
        steps = [cls.step_class.from_dict(s) for s in data.get("steps", [])]
        kwargs = cls._common_kwargs(data)
        kwargs["workflow_kind"] = data.get("workflow_kind") or "task_completion"
        return cls(
            steps,
            task_weight=data.get("task_weight") or 0.0,
            completion_grade=data.get("completion_grade"),
            rejection_count=data.get("rejection_count") or 0,
            last_rejection=data.get("last_rejection"),
            **kwargs,
        )
