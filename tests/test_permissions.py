"""
test_permissions.py — Read / write visibility.

Run with:
    pytest tests/test_permissions.py -v
"""

from __future__ import annotations

import pytest

from conftest import ADMIN, LUCKY, QUERY_ID, RASTA, TRASHBIRD
from notifier.app.alerts.collaborators import StaticCollectionPermissions
from notifier.app.alerts.models import Alert, Channel, ScheduleType, User
from notifier.app.alerts.permissions import CHANNEL_PERMISSION_MESSAGE, PermissionFilter
from notifier.app.core.errors import GENERIC_PERMISSION_MESSAGE, PermissionDenied


def _make_alert(creator=RASTA, archived=False, alert_id=1) -> Alert:
    return Alert(query_id=QUERY_ID, creator_id=creator.id, archived=archived, id=alert_id)


def _make_channels(*recipients: User):
    return [Channel(
        channel_type="email", schedule_type=ScheduleType.HOURLY,
        recipients=tuple(u.id for u in recipients), id=1,
    )]


@pytest.fixture
def permissions():
    return PermissionFilter(StaticCollectionPermissions({LUCKY.id: {QUERY_ID}}))


class TestCanRead:

    def test_admin_reads_everything(self, permissions):
        assert permissions.can_read(ADMIN, _make_alert(), [])

    def test_creator_reads(self, permissions):
        assert permissions.can_read(RASTA, _make_alert(), [])

    def test_recipient_reads(self, permissions):
        assert permissions.can_read(TRASHBIRD, _make_alert(), _make_channels(TRASHBIRD))

    def test_collection_reader_reads(self, permissions):
        assert permissions.can_read(LUCKY, _make_alert(), [])

    def test_outsider_denied(self, permissions):
        assert not permissions.can_read(TRASHBIRD, _make_alert(), _make_channels(LUCKY))
        with pytest.raises(PermissionDenied) as exc:
            permissions.check_read(TRASHBIRD, _make_alert(), [])
        assert exc.value.message == GENERIC_PERMISSION_MESSAGE
        assert exc.value.status_code == 403


class TestCanWrite:

    def test_recipient_with_collection_access_writes(self, permissions):
        assert permissions.can_write(LUCKY, _make_alert(), _make_channels(LUCKY))

    def test_creator_without_collection_access_denied(self, permissions):
        assert not permissions.can_write(RASTA, _make_alert(), [])

    def test_collection_reader_not_involved_denied(self, permissions):
        assert not permissions.can_write(LUCKY, _make_alert(), [])


class TestCanWriteChannels:

    def test_admin(self, permissions):
        assert permissions.can_write_channels(ADMIN, _make_alert(), [])

    def test_recipient_with_subscription_capability(self, permissions):
        assert permissions.can_write_channels(RASTA, _make_alert(), _make_channels(RASTA))

    def test_recipient_without_capability_denied_with_fixed_message(self, permissions):
        with pytest.raises(PermissionDenied) as exc:
            permissions.check_write_channels(LUCKY, _make_alert(), _make_channels(LUCKY))
        assert exc.value.message == CHANNEL_PERMISSION_MESSAGE


class TestFilterReadable:

    def test_archived_excluded_by_default(self, permissions):
        pairs = [(_make_alert(alert_id=1), []), (_make_alert(archived=True, alert_id=2), [])]
        visible = permissions.filter_readable(ADMIN, pairs)
        assert [a.id for a, _ in visible] == [1]
        assert len(permissions.filter_readable(ADMIN, pairs, include_archived=True)) == 2

    def test_unreadable_dropped(self, permissions):
        pairs = [(_make_alert(creator=ADMIN), [])]
        assert permissions.filter_readable(TRASHBIRD, pairs) == []
