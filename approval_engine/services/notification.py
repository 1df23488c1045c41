"""
Approval Workflow Engine
Notification Service and notification ports.

NotificationService stores and lists in-app Notification records. The
NotificationPort adapters are what the engine calls after a committed
transition:

    InAppNotificationPort    stores a Notification for the recipient
    LoggingNotificationPort  only writes a log line
    NullNotificationPort     delivers nothing (reports failure)

A port returns True when the message was handed off. It may raise; the
approval service catches, logs and leaves the step flagged unsent.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

from approval_engine.models import db
from approval_engine.models.notification import Notification

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = ("activated", "approved", "rejected", "reset")


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def create(*, title, recipient, message="", category="approval", severity="info",
               entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def list_for_recipient(recipient, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter(Notification.recipient == recipient)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total


# ═════════════════════════════════════════════════════════════════════════════
# Ports
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ChainContext:
    """What a port needs to know about the chain behind a notification."""

    chain_id: int | None
    chain_type: str
    workflow_kind: str
    entity_type: str
    entity_id: str
    requester_key: str
    requester_name: str
    event: str
    recipient_key: str
    level: int | None = None
    comment: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def render_message(step, context: ChainContext) -> tuple[str, str, str]:
    """Return (title, message, severity) for one event."""
    subject = f"{context.workflow_kind.replace('_', ' ')} {context.entity_type} {context.entity_id}"
    if context.event == "activated":
        capacity = f" as {step.capacity.replace('_', ' ')}" if step is not None and step.capacity else ""
        return (
            f"Approval needed: {subject}",
            f"{context.requester_name or context.requester_key} is waiting for your decision "
            f"at level {context.level}{capacity}.",
            "info",
        )
    if context.event == "approved":
        return (f"Approved: {subject}", "Every approval level has signed off.", "success")
    if context.event == "rejected":
        who = f" by {step.approver_name}" if step is not None and step.approver_name else ""
        reason = f" Reason: {context.comment}" if context.comment else ""
        return (f"Rejected: {subject}", f"Rejected at level {context.level}{who}.{reason}", "warning")
    return (f"Resubmitted: {subject}", "The request was reset and restarts at level 1.", "info")


class NotificationPort(ABC):
    """Delivers one message about a chain event to one recipient."""

    @abstractmethod
    def notify(self, step, context: ChainContext) -> bool:
        """Return True when the message was handed off."""


class InAppNotificationPort(NotificationPort):
    """Stores the message as an in-app Notification."""

    def notify(self, step, context: ChainContext) -> bool:
        title, message, severity = render_message(step, context)
        NotificationService.create(
            title=title,
            message=message,
            category="task" if context.chain_type == "graded" else "approval",
            severity=severity,
            recipient=context.recipient_key,
            entity_type="approval_chain",
            entity_id=context.chain_id,
        )
        return True


class LoggingNotificationPort(NotificationPort):
    def notify(self, step, context: ChainContext) -> bool:
        title, message, _ = render_message(step, context)
        logger.info(
            "Notify %s: %s — %s", context.recipient_key, title, message,
            extra={
                "chain_id": context.chain_id,
                "event_type": context.event,
                "level": context.level,
                "approver_key": context.recipient_key,
            },
        )
        return True


class NullNotificationPort(NotificationPort):
    def notify(self, step, context: ChainContext) -> bool:
        return False


_PORTS = {
    "in_app": InAppNotificationPort,
    "log": LoggingNotificationPort,
    "none": NullNotificationPort,
}


def build_port(name: str) -> NotificationPort:
    """Instantiate the port named by APPROVAL_NOTIFICATIONS."""
    try:
        return _PORTS[(name or "in_app").strip().lower()]()
    except KeyError:
        raise ValueError(f"Unknown notification port {name!r} (expected one of {sorted(_PORTS)})")
