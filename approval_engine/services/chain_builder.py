"""
ChainBuilder — derives who must approve a request.

Three build modes:

    dynamic      general / purchase / budget
                 walk the supervisor links, merge the department head,
                 append the finance officer last when finance is required
    fixed shape  invoice / customer_onboarding
                 evaluate a fixed role sequence; invoice always ends with
                 the finance officer
    graded       task_completion
                 three role-bound levels with alternate-approver
                 substitution (see build_graded)

One identity never occupies two steps: a person reached through several
roles gets one step carrying every capacity. The builder only reads the
Directory and returns an in-memory chain; persisting it is the caller's job.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

from approval_engine.core.exceptions import (
    CycleDetectedError,
    EmptyChainError,
    NotFoundError,
    ValidationError,
)
from approval_engine.models.approval import (
    CAPACITY_PRIORITY,
    FINANCE_WORKFLOW_KINDS,
    FIXED_CHAIN_SHAPES,
    GRADED_LEVEL_ROLES,
    TERMINAL_CAPACITY,
    WORKFLOW_KINDS,
)
from approval_engine.services.approval_chain import ApprovalChain, ApprovalStep
from approval_engine.services.directory import Directory, Identity, normalise_key
from approval_engine.services.graded_chain import GradedApprovalStep, GradedCompletionChain

logger = logging.getLogger(__name__)

DEFAULT_MAX_LEVELS = 10
DEFAULT_HOURS_PER_LEVEL = 24
BUSINESS_HOURS_PER_DAY = 8

# Roles resolved from the requester's reporting lines; every other role
# comes from the configured role holders.
_HIERARCHY_ROLES = ("direct_supervisor", "department_head")


def primary_capacity(capacities) -> str:
    """Pick the capacity that classifies a step for an approver holding several."""
    for capacity in CAPACITY_PRIORITY:
        if capacity in capacities:
            return capacity
    return capacities[0] if capacities else "direct_supervisor"


@dataclass
class _Draft:
    """An approver collected during a build, before levels are renumbered."""

    identity: Identity
    level: int
    capacities: list = field(default_factory=list)

    def add_capacity(self, capacity: str) -> None:
        if capacity not in self.capacities:
            self.capacities.append(capacity)


class ChainBuilder:
    """Builds ApprovalChain / GradedCompletionChain objects from a Directory.

    Args:
        directory: read-only organizational lookup.
        role_holders: capacity → identity key for organization-wide roles
            (finance_officer, business_head, supply_chain_coordinator, ...).
        max_levels: bound on supervisor hops.
        grading_fallback_key: last-resort grader when a graded level has no
            eligible approver.
        hours_per_level: estimate used by preview().
    """

    def __init__(
        self,
        directory: Directory,
        role_holders: dict | None = None,
        *,
        max_levels: int = DEFAULT_MAX_LEVELS,
        grading_fallback_key: str | None = None,
        hours_per_level: int = DEFAULT_HOURS_PER_LEVEL,
    ):
        if max_levels < 1:
            raise ValueError("max_levels must be at least 1")
        self.directory = directory
        self.role_holders = {
            capacity: normalise_key(key)
            for capacity, key in (role_holders or {}).items() if key
        }
        self.max_levels = max_levels
        self.grading_fallback_key = normalise_key(grading_fallback_key) or None
        self.hours_per_level = hours_per_level

    @classmethod
    def from_config(cls, directory: Directory, config) -> "ChainBuilder":
        """Create a builder from a Flask config mapping."""
        return cls(
            directory,
            role_holders={
                "finance_officer": config.get("APPROVAL_FINANCE_OFFICER_KEY"),
                "business_head": config.get("APPROVAL_BUSINESS_HEAD_KEY"),
                "supply_chain_coordinator": config.get("APPROVAL_SUPPLY_CHAIN_COORDINATOR_KEY"),
            },
            max_levels=int(config.get("APPROVAL_MAX_LEVELS", DEFAULT_MAX_LEVELS)),
            grading_fallback_key=config.get("APPROVAL_GRADING_FALLBACK_KEY"),
            hours_per_level=int(config.get("APPROVAL_HOURS_PER_LEVEL", DEFAULT_HOURS_PER_LEVEL)),
        )

    # ═════════════════════════════════════════════════════════════════════
    # Sequential chains
    # ═════════════════════════════════════════════════════════════════════

    def build(
        self,
        requester_key: str,
        workflow_kind: str = "general",
        *,
        require_finance: bool = False,
        skip_levels: int = 0,
    ) -> ApprovalChain:
        """Build a sequential chain for ``requester_key``.

        Raises:
            ValidationError: unknown workflow kind, task_completion (use
                build_graded), or negative skip_levels.
            NotFoundError: unknown requester, or the invoice finance officer
                cannot be resolved.
            EmptyChainError: nobody is left to approve.
        """
        kind = self._check_kind(workflow_kind)
        if kind == "task_completion":
            raise ValidationError("task_completion chains are built with build_graded()")
        if skip_levels < 0:
            raise ValidationError("skip_levels cannot be negative", details={"skip_levels": skip_levels})

        requester = self._resolve_requester(requester_key)
        if kind in FIXED_CHAIN_SHAPES:
            drafts = self._fixed_shape_drafts(requester, kind)
            protected = TERMINAL_CAPACITY.get(kind)
        else:
            finance = require_finance or kind in FINANCE_WORKFLOW_KINDS
            drafts = self._dynamic_drafts(requester, finance)
            protected = "finance_officer" if finance else None

        steps = self._finalise(drafts, skip_levels, protected)
        if not steps:
            raise EmptyChainError(requester.key, kind)

        chain = ApprovalChain(steps, workflow_kind=kind, requester=requester)
        logger.info(
            "Built %s chain for %s: %s",
            kind, requester.key,
            " → ".join(f"L{s.level} {s.approver_key} ({s.capacity})" for s in steps),
            extra={"workflow_kind": kind, "requester_key": requester.key},
        )
        return chain

    def _dynamic_drafts(self, requester: Identity, require_finance: bool) -> dict:
        drafts: dict[str, _Draft] = {}
        next_level = 1
        last = requester

        try:
            for supervisor in self._walk_supervisors(requester):
                drafts[supervisor.key] = _Draft(supervisor, next_level, ["direct_supervisor"])
                next_level += 1
                last = supervisor
        except CycleDetectedError as exc:
            logger.warning(
                "Supervisor walk truncated: %s", exc,
                extra={"requester_key": requester.key, "event_type": "walk_truncated"},
            )

        head = self.directory.department_head_of(last.key)
        if head is not None and not head.is_active:
            logger.info("Department head %s is inactive, not added", head.key)
        elif head is not None and head.key != requester.key:
            if head.key in drafts:
                drafts[head.key].add_capacity("department_head")
            else:
                drafts[head.key] = _Draft(head, next_level, ["department_head"])
                next_level += 1

        if require_finance:
            officer = self._role_holder("finance_officer")
            if officer is None:
                logger.warning(
                    "Finance approval required but no active finance officer is configured",
                    extra={"requester_key": requester.key},
                )
            elif officer.key == requester.key:
                logger.info("Requester %s is the finance officer, not added", requester.key)
            else:
                draft = drafts.setdefault(officer.key, _Draft(officer, next_level))
                draft.add_capacity("finance_officer")
                draft.level = next_level

        return drafts

    def _fixed_shape_drafts(self, requester: Identity, kind: str) -> dict:
        drafts: dict[str, _Draft] = {}
        terminal = TERMINAL_CAPACITY.get(kind)
        next_level = 1

        for capacity in FIXED_CHAIN_SHAPES[kind]:
            identity = self._resolve_role(capacity, requester)
            if identity is None:
                if capacity == terminal:
                    raise NotFoundError("Identity", self.role_holders.get(capacity) or capacity)
                logger.info("No %s for %s, role skipped", capacity, requester.key)
                continue
            if identity.key == requester.key:
                if capacity == terminal:
                    raise ValidationError(
                        f"{requester.key} cannot be the terminal {capacity} of their own request"
                    )
                logger.info("Requester holds %s, role skipped", capacity)
                continue
            if identity.key in drafts:
                drafts[identity.key].add_capacity(capacity)
            else:
                drafts[identity.key] = _Draft(identity, next_level, [capacity])
                next_level += 1

        if terminal:
            for draft in drafts.values():
                if terminal in draft.capacities:
                    draft.level = next_level
        return drafts

    def _finalise(self, drafts: dict, skip_levels: int, protected: str | None) -> list:
        ordered = sorted(drafts.values(), key=lambda d: d.level)
        if skip_levels:
            ordered = [
                d for d in ordered
                if d.level > skip_levels or (protected and protected in d.capacities)
            ]
        return [
            ApprovalStep(
                level=i,
                approver=d.identity,
                capacity=primary_capacity(d.capacities),
                capacities=list(d.capacities),
            )
            for i, d in enumerate(ordered, 1)
        ]

    # ═════════════════════════════════════════════════════════════════════
    # Graded chains
    # ═════════════════════════════════════════════════════════════════════

    def build_graded(
        self,
        assignee_key: str,
        originator_key: str | None = None,
        task_weight: float = 0.0,
    ) -> GradedCompletionChain:
        """Build the three-level grading chain for one assignee.

        Level 3 belongs to the originator and is skipped when there is none
        (or it is the assignee). Levels 1 and 2 take the next eligible
        candidate from: the assignee's supervisor walk, the assignee's
        department head, then the grading fallback. A candidate is
        ineligible when it is the assignee, the originator or already used;
        a level with no eligible candidate is skipped.
        """
        assignee = self._resolve_requester(assignee_key)

        originator = None
        if originator_key:
            originator = self.directory.resolve(originator_key)
            if originator is None or not originator.is_active:
                logger.warning("Originator %s not resolvable, level 3 skipped", originator_key)
                originator = None
            elif originator.key == assignee.key:
                logger.info("Assignee %s originated the work, level 3 skipped", assignee.key)
                originator = None

        used = {assignee.key}
        if originator is not None:
            used.add(originator.key)

        candidates = self._grading_candidates(assignee)
        steps = []
        position = 0
        for level, role in enumerate(GRADED_LEVEL_ROLES[:2], 1):
            pick = None
            while position < len(candidates):
                identity, capacity = candidates[position]
                position += 1
                if identity.key not in used:
                    pick = (identity, capacity)
                    break
            if pick is None:
                logger.info("No eligible grader for level %d (%s), level skipped", level, role)
                steps.append(GradedApprovalStep(level, None, status="skipped", level_role=role))
                continue
            identity, capacity = pick
            used.add(identity.key)
            steps.append(GradedApprovalStep(
                level, identity, capacity=capacity, capacities=[capacity], level_role=role,
            ))

        role = GRADED_LEVEL_ROLES[2]
        if originator is None:
            steps.append(GradedApprovalStep(3, None, status="skipped", level_role=role))
        else:
            steps.append(GradedApprovalStep(
                3, originator, capacity="project_creator", capacities=["project_creator"],
                level_role=role,
            ))

        chain = GradedCompletionChain(steps, task_weight=task_weight, requester=assignee)
        logger.info(
            "Built graded chain for %s: %s",
            assignee.key,
            " → ".join(f"L{s.level} {s.approver_key or 'skipped'}" for s in steps),
            extra={"workflow_kind": "task_completion", "requester_key": assignee.key},
        )
        return chain

    def _grading_candidates(self, assignee: Identity) -> list:
        candidates = []
        try:
            for supervisor in self._walk_supervisors(assignee):
                candidates.append((supervisor, "direct_supervisor"))
        except CycleDetectedError as exc:
            logger.warning("Grading walk truncated: %s", exc, extra={"requester_key": assignee.key})

        head = self.directory.department_head_of(assignee.key)
        if head is not None and head.is_active:
            candidates.append((head, "department_head"))

        if self.grading_fallback_key:
            fallback = self.directory.resolve(self.grading_fallback_key)
            if fallback is not None and fallback.is_active:
                held = self.directory.capacities_of(fallback.key)
                capacity = primary_capacity(sorted(held)) if held else "business_head"
                candidates.append((fallback, capacity))
            else:
                logger.warning("Grading fallback %s not resolvable", self.grading_fallback_key)
        return candidates

    # ═════════════════════════════════════════════════════════════════════
    # Preview
    # ═════════════════════════════════════════════════════════════════════

    def estimate_duration(self, step_count: int) -> dict:
        """Working-hour estimate: hours_per_level per step, 8-hour business days."""
        hours = step_count * self.hours_per_level
        days = math.ceil(hours / BUSINESS_HOURS_PER_DAY)
        return {
            "hours": hours,
            "business_days": days,
            "display_text": f"{days}-{days + 2} business days",
        }

    def preview(self, requester_key: str, workflow_kind: str = "general", **options) -> dict:
        """Describe the chain a submission would get, without persisting anything."""
        if self._check_kind(workflow_kind) == "task_completion":
            chain = self.build_graded(requester_key, **options)
        else:
            chain = self.build(requester_key, workflow_kind, **options)
        active = [s for s in chain.steps if s.status != "skipped"]
        return {
            "workflow_kind": chain.workflow_kind,
            "total_steps": len(active),
            "estimated_time": self.estimate_duration(len(active)),
            "steps": [
                {
                    "level": s.level,
                    "approver": s.approver_name,
                    "approver_key": s.approver_key,
                    "department": s.approver.department if s.approver else "",
                    "capacity": s.capacity,
                    "all_capacities": list(s.capacities),
                    "status": s.status,
                }
                for s in chain.steps
            ],
        }

    # ── Lookups ──────────────────────────────────────────────────────────

    def _check_kind(self, workflow_kind: str) -> str:
        kind = (workflow_kind or "").strip().lower()
        if kind not in WORKFLOW_KINDS:
            raise ValidationError(
                f"Unknown workflow kind {workflow_kind!r}",
                details={"workflow_kind": sorted(WORKFLOW_KINDS)},
            )
        return kind

    def _resolve_requester(self, key: str) -> Identity:
        identity = self.directory.resolve(key)
        if identity is None:
            raise NotFoundError("Identity", normalise_key(key))
        return identity

    def _role_holder(self, capacity: str) -> Identity | None:
        key = self.role_holders.get(capacity)
        if not key:
            return None
        identity = self.directory.resolve(key)
        if identity is None or not identity.is_active:
            return None
        return identity

    def _resolve_role(self, capacity: str, requester: Identity) -> Identity | None:
        if capacity in _HIERARCHY_ROLES:
            if capacity == "direct_supervisor":
                identity = self.directory.supervisor_of(requester.key)
            else:
                identity = self.directory.department_head_of(requester.key)
            return identity if identity is not None and identity.is_active else None
        return self._role_holder(capacity)

    def _walk_supervisors(self, start: Identity):
        """Yield active supervisors upward from ``start``.

        Stops quietly at a missing or inactive supervisor. Raises
        CycleDetectedError on a revisited identity or after max_levels hops.
        """
        visited = {start.key}
        current = start
        hops = 0
        while True:
            supervisor = self.directory.supervisor_of(current.key)
            if supervisor is None:
                return
            if not supervisor.is_active:
                logger.info("Supervisor %s of %s is inactive, walk ends", supervisor.key, current.key)
                return
            if supervisor.key in visited:
                raise CycleDetectedError(current.key, f"{supervisor.key} already visited")
            if hops >= self.max_levels:
                raise CycleDetectedError(current.key, f"max_levels={self.max_levels} reached")
            visited.add(supervisor.key)
            hops += 1
            yield supervisor
            current = supervisor
