"""
Approval service — persistence and orchestration for approval chains.

Every public operation is one logical unit:

    load record → rebuild domain chain → transition → write back → commit
    → (after commit) notify

Concurrency:
    A striped per-chain-id lock serializes transitions inside one process and the
    ``version_id`` column makes SQLAlchemy refuse a stale write from any
    other process. A lost race surfaces as ConflictError with nothing
    written.

Notifications are dispatched only after the transition committed. A port
failure is logged and leaves ``notification_sent`` / ``outcome_notified``
False; it never rolls the transition back.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from sqlalchemy import and_, select
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.exceptions import (
    ConflictError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from approval_engine.models import db
from approval_engine.models.approval import ApprovalChainRecord, ApprovalStepRecord
from approval_engine.services.approval_chain import ApprovalChain, Transition, acting_key
from approval_engine.services.engine import get_engine
from approval_engine.services.graded_chain import GradedCompletionChain
from approval_engine.services.notification import ChainContext

logger = logging.getLogger(__name__)

_CHAIN_CLASSES = {
    "sequential": ApprovalChain,
    "graded": GradedCompletionChain,
}

LOCK_STRIPES = 64

# Striped by chain id; two chains may share a lock.
_locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def chain_lock(chain_id: int) -> threading.Lock:
    """Return the process-wide lock guarding one chain id."""
    return _locks[hash(chain_id) % LOCK_STRIPES]


def _now():
    return datetime.now(timezone.utc)


def _log_extra(record: ApprovalChainRecord, **extra) -> dict:
    return {
        "chain_id": record.id,
        "chain_type": record.chain_type,
        "workflow_kind": record.workflow_kind,
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        **extra,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Record ↔ domain mapping
# ═════════════════════════════════════════════════════════════════════════════


def load_chain(record: ApprovalChainRecord) -> ApprovalChain:
    """Rebuild the domain chain persisted in ``record``."""
    cls = _CHAIN_CLASSES[record.chain_type]
    return cls.from_dict(record.to_dict(include_steps=True))


def new_record(chain: ApprovalChain, entity_type: str, entity_id) -> ApprovalChainRecord:
    """Create (unsaved) records for a freshly built chain."""
    record = ApprovalChainRecord(
        chain_type=chain.chain_type,
        workflow_kind=chain.workflow_kind,
        entity_type=entity_type,
        entity_id=str(entity_id),
        requester_key=chain.requester.key if chain.requester else "",
        requester_name=chain.requester.display_name if chain.requester else "",
        status=chain.status,
        current_level=chain.current_level,
        task_weight=getattr(chain, "task_weight", None),
        rejection_count=getattr(chain, "rejection_count", 0),
    )
    for step in chain.steps:
        record.steps.append(ApprovalStepRecord(
            level=step.level,
            approver_key=step.approver_key,
            approver_name=step.approver_name,
            approver_department=step.approver.department if step.approver else "",
            capacity=step.capacity,
            capacities=list(step.capacities),
            level_role=getattr(step, "level_role", None) or None,
            status=step.status,
        ))
    return record


def apply_chain(chain: ApprovalChain, record: ApprovalChainRecord) -> None:
    """Copy the mutable state of ``chain`` onto ``record`` (no commit)."""
    for step in chain.steps:
        row = record.step_at(step.level)
        row.status = step.status
        row.comment = step.comment
        row.decided_at = step.decided_at
        row.notification_sent = step.notification_sent
        if isinstance(chain, GradedCompletionChain):
            row.grade = step.grade
            row.effective_score = step.effective_score

    record.status = chain.status
    record.current_level = chain.current_level
    record.updated_at = _now()
    if isinstance(chain, GradedCompletionChain):
        record.completion_grade = chain.completion_grade
        record.rejection_count = chain.rejection_count
        record.last_rejection = chain.last_rejection
    if chain.is_terminal:
        record.completed_at = record.completed_at or _now()
    else:
        record.completed_at = None
        record.outcome_notified = False


def commit_transition(record: ApprovalChainRecord) -> None:
    """Commit, turning a lost optimistic-lock race into ConflictError."""
    chain_id = record.id
    version = record.version_id
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(
            "Concurrent update on approval chain %s", chain_id,
            extra={"chain_id": chain_id, "event_type": "conflict"},
        )
        raise ConflictError("ApprovalChain", "version_id", str(version))


# ═════════════════════════════════════════════════════════════════════════════
# Notification dispatch
# ═════════════════════════════════════════════════════════════════════════════


def _context(record: ApprovalChainRecord, event: str, recipient: str, level=None, comment=None):
    return ChainContext(
        chain_id=record.id,
        chain_type=record.chain_type,
        workflow_kind=record.workflow_kind,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        requester_key=record.requester_key,
        requester_name=record.requester_name or "",
        event=event,
        recipient_key=recipient,
        level=level,
        comment=comment,
    )


def _notify(step, context: ChainContext) -> bool:
    try:
        return bool(get_engine().notifier.notify(step, context))
    except Exception:
        db.session.rollback()
        logger.warning(
            "Notification to %s failed", context.recipient_key, exc_info=True,
            extra={"chain_id": context.chain_id, "event_type": context.event, "level": context.level},
        )
        return False


def _save_flags(record: ApprovalChainRecord) -> None:
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning("Could not record notification flag on chain %s", record.id)


def dispatch_notifications(record: ApprovalChainRecord, transition: Transition) -> None:
    """Send the notifications one committed transition calls for."""
    activated = transition.activated
    if activated is not None:
        row = record.step_at(activated.level)
        if row is not None and not row.notification_sent:
            event = "reset" if transition.outcome == "reset" else "activated"
            context = _context(record, event, row.approver_key, level=row.level)
            if _notify(activated, context):
                row.notification_sent = True
                _save_flags(record)

    if transition.outcome not in ("approved", "rejected"):
        return
    level = transition.step.level if transition.step is not None else None
    context = _context(
        record, transition.outcome, record.requester_key, level=level, comment=transition.comment,
    )
    if not transition.is_terminal:
        # Graded rejection: the chain restarts, only the assignee is told.
        _notify(transition.step, context)
        return
    if not record.outcome_notified and _notify(transition.step, context):
        record.outcome_notified = True
        _save_flags(record)


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════


def submit_for_approval(
    entity_type: str,
    entity_id,
    requester_key: str,
    workflow_kind: str = "general",
    *,
    require_finance: bool = False,
    skip_levels: int = 0,
) -> ApprovalChainRecord:
    """Build, persist and activate a sequential chain for one request.

    Raises:
        ConflictError: the entity already has a pending chain.
        NotFoundError / EmptyChainError / ValidationError: from the builder.
    """
    if not entity_type or entity_id is None or entity_id == "":
        raise ValidationError("entity_type and entity_id are required")
    existing = get_entity_chain(entity_type, entity_id)
    if existing is not None and existing.status == "pending":
        raise ConflictError("ApprovalChain", "entity", f"{entity_type}/{entity_id}")

    chain = get_engine().builder.build(
        requester_key, workflow_kind, require_finance=require_finance, skip_levels=skip_levels,
    )
    record = new_record(chain, entity_type, entity_id)
    db.session.add(record)
    db.session.commit()

    logger.info(
        "Approval chain %s created with %d levels", record.id, len(record.steps),
        extra=_log_extra(record, requester_key=record.requester_key, event_type="submitted"),
    )
    dispatch_notifications(
        record,
        Transition(outcome="submitted", chain_status=chain.status, activated=chain.current_approver()),
    )
    return record


def decide(chain_id: int, acting: str, decision: str, comment: str | None = None) -> ApprovalChainRecord:
    """Approve or reject the active level of a sequential chain.

    Raises:
        NotFoundError, NotPendingError, NotAuthorizedError, ValidationError,
        ConflictError.
    """
    with chain_lock(chain_id):
        record = get_chain(chain_id)
        if record.chain_type != "sequential":
            raise ValidationError(
                "Graded chains are decided through the task completion service",
                details={"chain_type": record.chain_type},
            )
        chain = load_chain(record)
        transition = chain.decide(acting, decision, comment)
        apply_chain(chain, record)
        commit_transition(record)

    logger.info(
        "Chain %s level %d %s by %s", record.id, transition.step.level,
        transition.step.status, transition.step.approver_key,
        extra=_log_extra(
            record, level=transition.step.level, approver_key=transition.step.approver_key,
            event_type=transition.outcome, status=record.status,
        ),
    )
    dispatch_notifications(record, transition)
    return record


def approve(chain_id: int, acting: str, comment: str | None = None) -> ApprovalChainRecord:
    return decide(chain_id, acting, "approve", comment)


def reject(chain_id: int, acting: str, comment: str | None = None) -> ApprovalChainRecord:
    return decide(chain_id, acting, "reject", comment)


def reset_after_rejection(chain_id: int, acting: str) -> ApprovalChainRecord:
    """Reopen a rejected chain for resubmission. Only the requester may resubmit."""
    with chain_lock(chain_id):
        record = get_chain(chain_id)
        if not record.requester_key or acting_key(acting) != record.requester_key:
            raise NotAuthorizedError(
                expected_key=record.requester_key,
                expected_name=record.requester_name,
                acting_key=acting_key(acting),
            )
        chain = load_chain(record)
        transition = chain.reset_after_rejection()
        apply_chain(chain, record)
        commit_transition(record)

    logger.info(
        "Chain %s reset for resubmission", record.id,
        extra=_log_extra(record, event_type="reset", status=record.status),
    )
    dispatch_notifications(record, transition)
    return record


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_chain(chain_id: int) -> ApprovalChainRecord:
    record = db.session.get(ApprovalChainRecord, chain_id)
    if record is None:
        raise NotFoundError(resource="ApprovalChain", resource_id=chain_id)
    return record


def get_entity_chain(entity_type: str, entity_id) -> ApprovalChainRecord | None:
    """Return the most recent chain for an entity, or None."""
    return db.session.execute(
        select(ApprovalChainRecord)
        .where(
            ApprovalChainRecord.entity_type == entity_type,
            ApprovalChainRecord.entity_id == str(entity_id),
        )
        .order_by(ApprovalChainRecord.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_pending_for_approver(approver_key: str, chain_type: str | None = None) -> list:
    """Chains whose active level belongs to ``approver_key``, oldest first."""
    stmt = (
        select(ApprovalChainRecord)
        .join(
            ApprovalStepRecord,
            and_(
                ApprovalStepRecord.chain_id == ApprovalChainRecord.id,
                ApprovalStepRecord.level == ApprovalChainRecord.current_level,
            ),
        )
        .where(
            ApprovalChainRecord.status == "pending",
            ApprovalStepRecord.status == "pending",
            ApprovalStepRecord.approver_key == acting_key(approver_key),
        )
        .order_by(ApprovalChainRecord.created_at, ApprovalChainRecord.id)
    )
    if chain_type:
        stmt = stmt.where(ApprovalChainRecord.chain_type == chain_type)
    return list(db.session.execute(stmt).scalars())


def chain_summary(chain_id: int) -> dict:
    record = get_chain(chain_id)
    return {**load_chain(record).summary(), "chain_id": record.id, "status": record.status}


def preview(requester_key: str, workflow_kind: str = "general", **options) -> dict:
    """What a submission would produce; nothing is persisted."""
    return get_engine().builder.preview(requester_key, workflow_kind, **options)
