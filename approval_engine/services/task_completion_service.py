"""
Task completion service — graded approval of action-item completions.

Flow per assignee:
    submit_completion()   → graded chain built (or reused after a rejection),
                            level 1 notified
    grade_completion()    → one level graded; after the last non-skipped
                            level the assignee is approved, KPI contributions
                            are applied and the item / milestone roll up
    reject_completion()   → every grade discarded, assignee must resubmit

The chain belongs to one assignee; an action item with several assignees
has one graded chain per assignee and completes when all are approved.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import select

from approval_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    NotPendingError,
    ValidationError,
)
from approval_engine.models import db
from approval_engine.models.approval import ApprovalChainRecord
from approval_engine.models.performance import (
    ActionItem,
    ActionItemAssignee,
    ActionItemKpiLink,
    KpiTarget,
    MAX_ACHIEVEMENT,
    Milestone,
)
from approval_engine.services import approval_service
from approval_engine.services.approval_chain import Transition
from approval_engine.services.directory import normalise_key
from approval_engine.services.engine import get_engine
from approval_engine.services.graded_chain import (
    apply_contribution,
    effective_score,
    kpi_contribution,
    mean_grade,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "action_item_assignee"


def _now():
    return datetime.now(timezone.utc)


def _get_item(action_item_id: int) -> ActionItem:
    item = db.session.get(ActionItem, action_item_id)
    if item is None:
        raise NotFoundError(resource="ActionItem", resource_id=action_item_id)
    return item


def _assignee_for_chain(record: ApprovalChainRecord) -> ActionItemAssignee:
    assignee = db.session.execute(
        select(ActionItemAssignee).where(ActionItemAssignee.chain_id == record.id)
    ).scalar_one_or_none()
    if assignee is None:
        raise NotFoundError(resource="ActionItemAssignee", resource_id=f"chain={record.id}")
    return assignee


def _awaiting_grading(record: ApprovalChainRecord) -> ActionItemAssignee:
    """Assignee of a pending chain whose completion has been submitted."""
    if record.status != "pending":
        raise NotPendingError(record.id, record.status)
    assignee = _assignee_for_chain(record)
    if assignee.completion_status != "submitted":
        raise ValidationError(
            "Completion is not awaiting grading",
            details={"completion_status": assignee.completion_status},
        )
    return assignee


def _get_graded_chain(chain_id: int) -> ApprovalChainRecord:
    record = approval_service.get_chain(chain_id)
    if record.chain_type != "graded":
        raise ValidationError(
            f"ApprovalChain {chain_id} is not a graded completion chain",
            details={"chain_type": record.chain_type},
        )
    return record


# ═════════════════════════════════════════════════════════════════════════════
# Action items
# ═════════════════════════════════════════════════════════════════════════════


def create_action_item(
    title: str,
    created_by_key: str,
    assignee_keys,
    *,
    task_weight: float = 0.0,
    originator_key: str | None = None,
    milestone_id: int | None = None,
    kpi_links=None,
) -> ActionItem:
    """Create an action item with its assignees and KPI links.

    Args:
        kpi_links: iterable of (kpi_id, kpi_weight) pairs.
    """
    if not title or not title.strip():
        raise ValidationError("title is required", details={"title": "required"})
    if task_weight is None or not (0 <= task_weight <= 100):
        raise ValidationError("task_weight must be between 0 and 100", details={"task_weight": task_weight})
    keys = [normalise_key(k) for k in assignee_keys or []]
    if not keys:
        raise ValidationError("At least one assignee is required", details={"assignees": "required"})
    if len(set(keys)) != len(keys):
        raise ValidationError("Duplicate assignee", details={"assignees": keys})
    if milestone_id is not None and db.session.get(Milestone, milestone_id) is None:
        raise NotFoundError(resource="Milestone", resource_id=milestone_id)

    item = ActionItem(
        title=title.strip(),
        task_weight=float(task_weight),
        created_by_key=normalise_key(created_by_key),
        originator_key=normalise_key(originator_key) or None,
        milestone_id=milestone_id,
        status="in_progress",
    )
    for key in keys:
        item.assignees.append(ActionItemAssignee(assignee_key=key))
    for kpi_id, kpi_weight in kpi_links or []:
        if db.session.get(KpiTarget, kpi_id) is None:
            raise NotFoundError(resource="KpiTarget", resource_id=kpi_id)
        if not (0 <= kpi_weight <= 100):
            raise ValidationError("kpi_weight must be between 0 and 100", details={"kpi_weight": kpi_weight})
        item.kpi_links.append(ActionItemKpiLink(kpi_id=kpi_id, kpi_weight=float(kpi_weight)))

    db.session.add(item)
    db.session.commit()
    logger.info("Action item %s created with %d assignee(s)", item.id, len(keys),
                extra={"entity_type": "action_item", "entity_id": item.id})
    return item


# ═════════════════════════════════════════════════════════════════════════════
# Completion workflow
# ═════════════════════════════════════════════════════════════════════════════


def submit_completion(action_item_id: int, assignee_key: str, notes: str | None = None) -> ActionItemAssignee:
    """Submit (or resubmit after rejection) one assignee's completion for grading.

    Raises:
        NotFoundError: unknown item or assignee.
        ConflictError: a submission is already being graded.
        ValidationError: the assignee was already approved.
        EmptyChainError: nobody can grade this assignee.
    """
    item = _get_item(action_item_id)
    assignee = item.assignee_for(assignee_key)
    if assignee is None:
        raise NotFoundError(resource="ActionItemAssignee", resource_id=normalise_key(assignee_key))
    if assignee.completion_status == "submitted":
        raise ConflictError("ActionItemAssignee", "completion_status", "submitted")
    if assignee.completion_status == "approved":
        raise ValidationError("Completion already approved", details={"completion_status": "approved"})

    record = db.session.get(ApprovalChainRecord, assignee.chain_id) if assignee.chain_id else None
    if record is not None and record.status == "pending":
        chain = approval_service.load_chain(record)
    else:
        chain = get_engine().builder.build_graded(
            assignee.assignee_key, item.originator_key, item.task_weight,
        )
        record = approval_service.new_record(chain, ENTITY_TYPE, assignee.id)
        db.session.add(record)
        db.session.flush()
        assignee.chain_id = record.id

    assignee.completion_status = "submitted"
    assignee.completion_notes = notes
    assignee.submitted_at = _now()
    assignee.completion_grade = None
    assignee.effective_score = None
    item.status = "pending_completion_approval"
    db.session.commit()

    logger.info(
        "Completion submitted for action item %s by %s", item.id, assignee.assignee_key,
        extra={"chain_id": record.id, "entity_type": "action_item", "entity_id": item.id,
               "requester_key": assignee.assignee_key, "event_type": "submitted"},
    )
    approval_service.dispatch_notifications(
        record,
        Transition(outcome="submitted", chain_status=chain.status, activated=chain.current_approver()),
    )
    return assignee


def grade_completion(
    chain_id: int,
    acting_key: str,
    grade,
    comment: str | None = None,
    level: int | None = None,
) -> ApprovalChainRecord:
    """Grade the active level of an assignee's completion chain.

    ``level`` defaults to the active level; passing a different one fails.
    """
    with approval_service.chain_lock(chain_id):
        record = _get_graded_chain(chain_id)
        assignee = _awaiting_grading(record)
        chain = approval_service.load_chain(record)
        transition = chain.grade_level(
            level if level is not None else chain.current_level, acting_key, grade, comment,
        )
        # Flush only at commit so a stale version surfaces as ConflictError.
        with db.session.no_autoflush:
            approval_service.apply_chain(chain, record)
            item = assignee.action_item
            if transition.outcome == "approved":
                assignee.completion_status = "approved"
                assignee.completion_grade = chain.completion_grade
                assignee.effective_score = effective_score(chain.completion_grade, item.task_weight)
                assignee.graded_at = _now()
                apply_kpi_contributions(item, chain.completion_grade)
                _complete_item_if_done(item)
        approval_service.commit_transition(record)

    logger.info(
        "Chain %s level %d graded %.1f", record.id, transition.step.level, transition.step.grade,
        extra={"chain_id": record.id, "chain_type": "graded", "level": transition.step.level,
               "approver_key": transition.step.approver_key, "event_type": transition.outcome},
    )
    approval_service.dispatch_notifications(record, transition)
    return record


def reject_completion(
    chain_id: int,
    acting_key: str,
    comment: str | None = None,
    level: int | None = None,
) -> ApprovalChainRecord:
    """Reject the active level; all grades are discarded and the assignee must resubmit."""
    with approval_service.chain_lock(chain_id):
        record = _get_graded_chain(chain_id)
        assignee = _awaiting_grading(record)
        chain = approval_service.load_chain(record)
        transition = chain.reject_level(
            level if level is not None else chain.current_level, acting_key, comment,
        )
        approval_service.apply_chain(chain, record)
        assignee.completion_status = "rejected"
        assignee.action_item.status = "in_progress"
        approval_service.commit_transition(record)

    logger.info(
        "Chain %s rejected at level %d (rejection #%d)",
        record.id, transition.step.level, record.rejection_count,
        extra={"chain_id": record.id, "chain_type": "graded", "level": transition.step.level,
               "approver_key": transition.step.approver_key, "event_type": "rejected"},
    )
    approval_service.dispatch_notifications(record, transition)
    return record


def list_pending_gradings(approver_key: str) -> list:
    """Graded chains waiting for ``approver_key`` on a submitted completion."""
    records = approval_service.list_pending_for_approver(approver_key, chain_type="graded")
    return [r for r in records if _assignee_for_chain(r).completion_status == "submitted"]


# ═════════════════════════════════════════════════════════════════════════════
# Roll-ups
# ═════════════════════════════════════════════════════════════════════════════


def apply_kpi_contributions(item: ActionItem, grade: float) -> list:
    """Add this grade's contribution to every KPI linked to ``item`` (no commit)."""
    applied = []
    for link in item.kpi_links:
        kpi = link.kpi
        if kpi is None:
            continue
        contribution = kpi_contribution(grade, link.kpi_weight)
        link.contribution = contribution
        kpi.achievement = apply_contribution(kpi.achievement, contribution)
        applied.append((kpi.id, contribution, kpi.achievement))
        logger.debug("KPI %s +%.2f → %.2f", kpi.id, contribution, kpi.achievement)
    return applied


def _complete_item_if_done(item: ActionItem) -> None:
    if not item.assignees or any(a.completion_status != "approved" for a in item.assignees):
        return
    item.status = "completed"
    item.completion_grade = mean_grade(a.completion_grade for a in item.assignees)
    item.completed_at = _now()
    if item.milestone is not None:
        recalculate_milestone_progress(item.milestone)


def recalculate_milestone_progress(milestone: Milestone) -> int:
    """progress = min(100, round(Σ grade / 5 × task_weight)) over completed items (no commit)."""
    total = 0.0
    with db.session.no_autoflush:
        items = milestone.action_items.all()
    for item in items:
        if item.status == "completed" and item.completion_grade is not None:
            total += item.completion_grade / 5.0 * item.task_weight
    progress = int(min(MAX_ACHIEVEMENT, math.floor(total + 0.5)))

    milestone.progress = progress
    if progress >= 100:
        milestone.status = "completed"
        milestone.completed_at = milestone.completed_at or _now()
    elif progress > 0:
        milestone.status = "in_progress"
        milestone.completed_at = None
    else:
        milestone.status = "not_started"
        milestone.completed_at = None
    return progress
