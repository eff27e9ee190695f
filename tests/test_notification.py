"""
Tests: NotificationService delivery, failure isolation and read tracking.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from compliance.models import db as _db
from compliance.models.finding import CAPA
from compliance.models.notification import Notification
from compliance.services import verification
from compliance.services.notification import NotificationService


@pytest.mark.unit
def test_duplicate_and_empty_recipients_are_dropped(org):
    sent = NotificationService.notify_users(
        [org.staff.id, org.staff.id, None, org.auditor.id],
        type="system", title="Hello",
    )
    assert sent == 2
    assert Notification.query.count() == 2


@pytest.mark.unit
def test_no_recipients_sends_nothing(org):
    assert NotificationService.notify_users([], title="Nobody") == 0


@pytest.mark.unit
def test_delivery_failure_is_reported_not_raised(org):
    # unknown user: the foreign key rejects the insert
    assert NotificationService.notify(9999, title="Lost") is False
    assert Notification.query.count() == 0


@pytest.mark.unit
def test_failed_notification_keeps_the_committed_transition(org, make_capa):
    capa = make_capa(status="pending_verification", evidence=["evidence/a/b/c.jpg"])

    with patch("compliance.services.notification.Notification",
               side_effect=SQLAlchemyError("notifications table unavailable")):
        verification.reject_capa(capa.id, org.regional_manager.id, "Wrong fridge")

    assert _db.session.get(CAPA, capa.id).status == "rejected"
    assert Notification.query.count() == 0


@pytest.mark.unit
def test_mark_read_only_for_owner(org):
    NotificationService.notify(org.staff.id, title="Sub-task assigned")
    notif = Notification.query.one()

    assert NotificationService.mark_read(notif.id, org.auditor.id) is None
    read = NotificationService.mark_read(notif.id, org.staff.id)
    assert read.is_read is True
    assert read.read_at is not None
    assert NotificationService.unread_count(org.staff.id) == 0


@pytest.mark.unit
def test_list_for_user_newest_first_with_unread_filter(org):
    for title in ("first", "second", "third"):
        NotificationService.notify(org.staff.id, title=title)
    oldest = Notification.query.filter_by(title="first").one()
    NotificationService.mark_read(oldest.id, org.staff.id)

    items, total = NotificationService.list_for_user(org.staff.id)
    assert total == 3
    assert [n.title for n in items] == ["third", "second", "first"]

    unread, unread_total = NotificationService.list_for_user(org.staff.id, unread_only=True)
    assert unread_total == 2
    assert "first" not in [n.title for n in unread]
