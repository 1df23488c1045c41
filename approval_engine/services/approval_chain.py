"""
Sequential approval chain — the engine's state machine.

An ApprovalChain owns an ordered, fixed-length tuple of ApprovalStep objects
and a single ``current_level`` pointer. Only the step at ``current_level``
may be decided; later steps stay inert until activated.

States:
    pending  — current_level points at the active step (1..N)
    approved — terminal, every non-skipped step approved, current_level = 0
    rejected — terminal, one step rejected, current_level = 0

Transitions:
    decide(acting, "approve" | "reject", comment)
    reset_after_rejection()   rejected → pending (resubmission)

Transitions are all-or-nothing: every check runs before the first field is
written, and one lock per chain object serializes concurrent callers.

Usage:
    chain = builder.build("jane@corp.example", "purchase")
    t = chain.decide("alice@corp.example", "approve", "ok")
    if t.activated:
        notifier.notify(t.activated, context)
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from approval_engine.core.exceptions import (
    EmptyChainError,
    NotAuthorizedError,
    NotPendingError,
    ValidationError,
)
from approval_engine.services.directory import Identity, normalise_key

_DECISION_ALIASES = {
    "approve": "approve",
    "approved": "approve",
    "reject": "reject",
    "rejected": "reject",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def normalise_decision(decision: str) -> str:
    """Map approve/approved/reject/rejected onto approve | reject."""
    normalised = _DECISION_ALIASES.get((decision or "").strip().lower())
    if normalised is None:
        raise ValidationError(
            f"decision must be 'approve' or 'reject' (got {decision!r})",
            details={"decision": "invalid"},
        )
    return normalised


def acting_key(acting) -> str:
    """Accept an Identity or a raw identity key."""
    if isinstance(acting, Identity):
        return acting.key
    return normalise_key(acting)


# ═════════════════════════════════════════════════════════════════════════════
# Steps & transition results
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class ApprovalStep:
    """One level of a chain. ``approver`` is None only for skipped graded levels."""

    level: int
    approver: Identity | None
    capacity: str | None = None
    capacities: list = field(default_factory=list)
    status: str = "pending"
    comment: str | None = None
    decided_at: datetime | None = None
    notification_sent: bool = False

    @property
    def approver_key(self) -> str | None:
        return self.approver.key if self.approver else None

    @property
    def approver_name(self) -> str:
        return self.approver.display_name if self.approver else ""

    def clear_decision(self) -> None:
        self.status = "pending"
        self.comment = None
        self.decided_at = None
        self.notification_sent = False

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "approver_key": self.approver_key,
            "approver_name": self.approver_name,
            "approver_department": self.approver.department if self.approver else "",
            "capacity": self.capacity,
            "capacities": list(self.capacities),
            "status": self.status,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "notification_sent": self.notification_sent,
        }

    @classmethod
    def _init_kwargs(cls, data: dict) -> dict:
        approver = None
        if data.get("approver_key"):
            approver = Identity(
                key=data["approver_key"],
                display_name=data.get("approver_name") or data["approver_key"],
                department=data.get("approver_department") or "",
                capacities=frozenset(data.get("capacities") or ()),
            )
        return {
            "level": int(data["level"]),
            "approver": approver,
            "capacity": data.get("capacity"),
            "capacities": list(data.get("capacities") or []),
            "status": data.get("status", "pending"),
            "comment": data.get("comment"),
            "decided_at": _parse_dt(data.get("decided_at")),
            "notification_sent": bool(data.get("notification_sent", False)),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalStep":
        return cls(**cls._init_kwargs(data))


@dataclass
class Transition:
    """Result of one successful transition.

    outcome:   submitted | advanced | approved | rejected | reset
    step:      the step that was decided (None for reset)
    activated: the step that became active (None when the chain ended)
    """

    outcome: str
    chain_status: str
    step: ApprovalStep | None = None
    activated: ApprovalStep | None = None
    comment: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.chain_status in ("approved", "rejected")


# ═════════════════════════════════════════════════════════════════════════════
# Chain
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalChain:
    """Ordered steps plus the single active-level pointer."""

    chain_type = "sequential"
    step_class = ApprovalStep

    def __init__(
        self,
        steps,
        *,
        workflow_kind: str = "general",
        requester: Identity | None = None,
        chain_id=None,
        status: str = "pending",
        current_level: int | None = None,
    ):
        ordered = sorted(steps, key=lambda s: s.level)
        if not ordered:
            raise EmptyChainError(requester.key if requester else "", workflow_kind)
        levels = [s.level for s in ordered]
        if levels != list(range(1, len(ordered) + 1)):
            raise ValidationError(f"Step levels must be contiguous from 1 (got {levels})")
        keys = [s.approver_key for s in ordered if s.approver_key]
        if len(keys) != len(set(keys)):
            raise ValidationError("An identity may occupy only one step per chain")

        self._steps = tuple(ordered)
        self._lock = threading.Lock()
        self.workflow_kind = workflow_kind
        self.requester = requester
        self.chain_id = chain_id
        self.status = status
        if current_level is None:
            current_level = self._next_pending_level(0) if status == "pending" else 0
        self.current_level = current_level

    # ── Read side ────────────────────────────────────────────────────────

    @property
    def steps(self) -> tuple:
        return self._steps

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"

    def step_at(self, level: int) -> ApprovalStep | None:
        if 1 <= level <= len(self._steps):
            return self._steps[level - 1]
        return None

    def current_approver(self) -> ApprovalStep | None:
        """Return the active step, or None when the chain is terminal."""
        if self.is_terminal or not self.current_level:
            return None
        return self.step_at(self.current_level)

    def progress_percent(self) -> int:
        """Approved share of non-skipped steps, rounded half-up."""
        countable = [s for s in self._steps if s.status != "skipped"]
        if not countable:
            return 0
        approved = sum(1 for s in countable if s.status == "approved")
        return int(math.floor(approved / len(countable) * 100 + 0.5))

    def summary(self) -> dict:
        counts = {status: 0 for status in ("pending", "approved", "rejected", "skipped")}
        for s in self._steps:
            counts[s.status] = counts.get(s.status, 0) + 1
        return {
            "total": len(self._steps),
            **counts,
            "effective_total": len(self._steps) - counts["skipped"],
            "progress": self.progress_percent(),
            "is_complete": self.status == "approved",
            "current_level": self.current_level or None,
        }

    def invariant_violations(self) -> list[str]:
        """Check the structural invariants; an empty list means the chain is sound."""
        problems = []
        active = self.current_approver()
        if self.status == "pending":
            if active is None or active.status != "pending":
                problems.append(f"current_level={self.current_level} is not a pending step")
            elif active.level != self._next_pending_level(0):
                problems.append("an earlier pending step precedes the active level")
            for s in self._steps:
                if s.level < self.current_level and s.status not in ("approved", "skipped"):
                    problems.append(f"level {s.level} below the active level is {s.status}")
        else:
            if self.current_level != 0:
                problems.append(f"terminal chain has current_level={self.current_level}")
        rejected = [s for s in self._steps if s.status == "rejected"]
        if rejected and self.status != "rejected":
            problems.append("a rejected step exists on a non-rejected chain")
        if self.status == "approved" and any(s.status not in ("approved", "skipped") for s in self._steps):
            problems.append("approved chain has undecided steps")
        return problems

    # ── Transitions ──────────────────────────────────────────────────────

    def decide(self, acting, decision: str, comment: str | None = None, *, now=None) -> Transition:
        """Approve or reject the active level on behalf of ``acting``.

        Raises:
            NotPendingError: the chain is already approved or rejected.
            NotAuthorizedError: ``acting`` is not the active approver.
            ValidationError: ``decision`` is not approve/reject.
        """
        with self._lock:
            step = self._authorize(acting)
            kind = normalise_decision(decision)
            if kind == "approve":
                return self._approve_step(step, comment, now or _utcnow())
            return self._reject_step(step, comment, now or _utcnow())

    def approve(self, acting, comment: str | None = None, *, now=None) -> Transition:
        return self.decide(acting, "approve", comment, now=now)

    def reject(self, acting, comment: str | None = None, *, now=None) -> Transition:
        return self.decide(acting, "reject", comment, now=now)

    def reset_after_rejection(self) -> Transition:
        """Reopen a rejected chain for resubmission, restarting at the first level."""
        with self._lock:
            if self.status != "rejected":
                raise ValidationError(
                    f"Only a rejected chain can be reset (status={self.status})"
                )
            for s in self._steps:
                if s.status != "skipped":
                    s.clear_decision()
            self.status = "pending"
            self.current_level = self._next_pending_level(0)
            return Transition(
                outcome="reset", chain_status=self.status, activated=self.current_approver(),
            )

    # ── Internals ────────────────────────────────────────────────────────

    def _authorize(self, acting) -> ApprovalStep:
        if self.is_terminal:
            raise NotPendingError(self.chain_id, self.status)
        step = self.current_approver()
        who = acting_key(acting)
        if step is None or step.approver_key != who:
            raise NotAuthorizedError(
                expected_key=step.approver_key if step else None,
                expected_name=step.approver_name if step else None,
                level=step.level if step else None,
                acting_key=who,
            )
        return step

    def _next_pending_level(self, after: int) -> int:
        for s in self._steps:
            if s.level > after and s.status == "pending":
                return s.level
        return 0

    def _approve_step(self, step: ApprovalStep, comment, now) -> Transition:
        step.status = "approved"
        step.comment = comment
        step.decided_at = now
        next_level = self._next_pending_level(step.level)
        if next_level:
            self.current_level = next_level
            return Transition(
                outcome="advanced", chain_status=self.status, step=step,
                activated=self.step_at(next_level), comment=comment,
            )
        self.status = "approved"
        self.current_level = 0
        self._on_completed()
        return Transition(outcome="approved", chain_status=self.status, step=step, comment=comment)

    def _reject_step(self, step: ApprovalStep, comment, now) -> Transition:
        step.status = "rejected"
        step.comment = comment
        step.decided_at = now
        self.status = "rejected"
        self.current_level = 0
        return Transition(outcome="rejected", chain_status=self.status, step=step, comment=comment)

    def _on_completed(self) -> None:
        """Hook for subclasses that aggregate results on final approval."""

    # ── Serialization ────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "id": self.chain_id,
            "chain_type": self.chain_type,
            "workflow_kind": self.workflow_kind,
            "requester_key": self.requester.key if self.requester else None,
            "requester_name": self.requester.display_name if self.requester else "",
            "status": self.status,
            "current_level": self.current_level,
            "progress": self.progress_percent(),
            "steps": [s.to_dict() for s in self._steps],
        }

    @classmethod
    def _common_kwargs(cls, data: dict) -> dict:
        requester = None
        if data.get("requester_key"):
            requester = Identity(
                key=data["requester_key"],
                display_name=data.get("requester_name") or data["requester_key"],
            )
        return {
            "workflow_kind": data.get("workflow_kind", "general"),
            "requester": requester,
            "chain_id": data.get("id"),
            "status": data.get("status", "pending"),
            "current_level": data.get("current_level"),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalChain":
        steps = [cls.step_class.from_dict(s) for s in data.get("steps", [])]
        return cls(steps, **cls._common_kwargs(data))

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} id={self.chain_id} {self.workflow_kind} "
            f"{self.status} L{self.current_level}/{len(self._steps)}>"
        )
