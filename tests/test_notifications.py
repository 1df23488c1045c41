"""
Notification service and port tests.
"""

import logging

import pytest

from approval_engine.models.notification import Notification
from approval_engine.services.approval_chain import ApprovalStep
from approval_engine.services.directory import Identity
from approval_engine.services.notification import (
    ChainContext,
    InAppNotificationPort,
    LoggingNotificationPort,
    NotificationService,
    NullNotificationPort,
    build_port,
    render_message,
)

from conftest import ALICE, HANA, JANE


def _context(event="activated", recipient=ALICE, chain_type="sequential", comment=None, level=1):
    return ChainContext(
        chain_id=11,
        chain_type=chain_type,
        workflow_kind="purchase",
        entity_type="purchase_request",
        entity_id="PR-7",
        requester_key=JANE,
        requester_name="Jane Adeyemi",
        event=event,
        recipient_key=recipient,
        level=level,
        comment=comment,
    )


def _step(key=ALICE, name="Alice Moreau", capacity="direct_supervisor"):
    return ApprovalStep(level=1, approver=Identity(key, name), capacity=capacity, capacities=[capacity])


# ═════════════════════════════════════════════════════════════════════════
# NotificationService
# ═════════════════════════════════════════════════════════════════════════

class TestNotificationService:
    def test_create(self):
        n = NotificationService.create(title="Hello", message="World", recipient=ALICE,
                                       category="approval", entity_type="approval_chain", entity_id=3)
        assert n.id is not None
        assert n.entity_id == "3"
        assert n.severity == "info"
        assert n.to_dict()["recipient"] == ALICE
        assert "is_read" not in n.to_dict()

    def test_list_only_own_notifications(self):
        NotificationService.create(title="Mine", recipient=ALICE)
        NotificationService.create(title="Not mine", recipient=HANA)
        items, total = NotificationService.list_for_recipient(ALICE)
        assert total == 1
        assert [n.title for n in items] == ["Mine"]

    def test_list_newest_first_and_paginates(self):
        for i in range(3):
            NotificationService.create(title=f"n{i}", recipient=ALICE)
        items, total = NotificationService.list_for_recipient(ALICE, limit=2)
        assert total == 3
        assert [n.title for n in items] == ["n2", "n1"]
        items, _ = NotificationService.list_for_recipient(ALICE, limit=2, offset=2)
        assert [n.title for n in items] == ["n0"]

    def test_unknown_recipient_has_none(self):
        NotificationService.create(title="Mine", recipient=ALICE)
        assert NotificationService.list_for_recipient("ghost@corp.example") == ([], 0)


# ═════════════════════════════════════════════════════════════════════════
# Messages & ports
# ═════════════════════════════════════════════════════════════════════════

class TestRenderMessage:
    def test_activated(self):
        title, message, severity = render_message(_step(), _context())
        assert title == "Approval needed: purchase purchase_request PR-7"
        assert "Jane Adeyemi" in message
        assert "level 1 as direct supervisor" in message
        assert severity == "info"

    def test_approved(self):
        title, _, severity = render_message(_step(), _context("approved", JANE))
        assert title.startswith("Approved")
        assert severity == "success"

    def test_rejected_names_approver_and_reason(self):
        step = _step(HANA, "Hana Petrova", "department_head")
        _, message, severity = render_message(step, _context("rejected", JANE, comment="no quote", level=2))
        assert message == "Rejected at level 2 by Hana Petrova. Reason: no quote"
        assert severity == "warning"

    def test_reset(self):
        title, _, _ = render_message(_step(), _context("reset"))
        assert title.startswith("Resubmitted")


class TestPorts:
    def test_in_app_port_stores_notification(self):
        assert InAppNotificationPort().notify(_step(), _context()) is True
        stored = Notification.query.filter_by(recipient=ALICE).one()
        assert stored.category == "approval"
        assert stored.entity_type == "approval_chain"
        assert stored.entity_id == "11"

    def test_in_app_port_graded_category(self):
        InAppNotificationPort().notify(_step(), _context(chain_type="graded"))
        assert Notification.query.filter_by(recipient=ALICE).one().category == "task"

    def test_logging_port(self, caplog):
        with caplog.at_level(logging.INFO, logger="approval_engine.services.notification"):
            assert LoggingNotificationPort().notify(_step(), _context()) is True
        record = caplog.records[-1]
        assert ALICE in record.getMessage()
        assert record.chain_id == 11
        assert record.event_type == "activated"

    def test_null_port_reports_undelivered(self):
        assert NullNotificationPort().notify(_step(), _context()) is False
        assert Notification.query.count() == 0

    @pytest.mark.parametrize("name, cls", [
        ("in_app", InAppNotificationPort),
        ("LOG", LoggingNotificationPort),
        ("none", NullNotificationPort),
        (None, InAppNotificationPort),
    ])
    def test_build_port(self, name, cls):
        assert isinstance(build_port(name), cls)

    def test_build_port_unknown(self):
        with pytest.raises(ValueError):
            build_port("carrier_pigeon")
