"""
Tests for in-app notifications: service, fire-and-forget sink and endpoints.
"""

import pytest

from autotrack.core.exceptions import NotFoundError
from autotrack.models import db
from autotrack.models.notification import AppNotification
from autotrack.services.notification import NotificationService, SqlNotificationSink

API = "/api/v1/notifications"


class TestNotificationService:
    def test_create_and_count(self, org):
        NotificationService.create(user_id=org.bob.id, message="hello")
        NotificationService.create(user_id=org.bob.id, message="again", subscription_id="abc")
        assert NotificationService.unread_count(org.bob.id) == 2
        assert NotificationService.unread_count(org.carol.id) == 0

    def test_broadcast_deduplicates_recipients(self, org):
        created = NotificationService.broadcast(
            user_ids=[org.apa.id, org.apa2.id, org.apa.id], message="queue updated",
        )
        assert len(created) == 2
        assert AppNotification.query.filter_by(message="queue updated").count() == 2

    def test_mark_read_is_owner_scoped(self, org):
        notif = NotificationService.create(user_id=org.bob.id, message="mine")
        with pytest.raises(NotFoundError):
            NotificationService.mark_read(org.carol.id, notif.id)
        assert NotificationService.mark_read(org.bob.id, notif.id).is_read is True

    def test_mark_all_read(self, org):
        for i in range(3):
            NotificationService.create(user_id=org.bob.id, message=f"n{i}")
        assert NotificationService.mark_all_read(org.bob.id) == 3
        assert NotificationService.mark_all_read(org.bob.id) == 0


class TestNotificationSink:
    def test_sink_swallows_database_errors(self, org):
        # Unknown recipient violates the users FK; delivery fails quietly
        SqlNotificationSink().notify("no-such-user", "lost")
        assert AppNotification.query.count() == 0
        SqlNotificationSink().notify(org.bob.id, "still works")
        assert AppNotification.query.filter_by(user_id=org.bob.id).count() == 1

    def test_notify_many_empty(self, org):
        SqlNotificationSink().notify_many([], "nobody")
        assert AppNotification.query.count() == 0


class TestNotificationEndpoints:
    def test_list_newest_first(self, client, org, headers):
        NotificationService.create(user_id=org.bob.id, message="first")
        NotificationService.create(user_id=org.bob.id, message="second")
        NotificationService.create(user_id=org.carol.id, message="not yours")

        res = client.get(API, headers=headers(org.bob))
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 2
        assert data["unread_count"] == 2
        assert [n["message"] for n in data["items"]] == ["second", "first"]

    def test_unread_only_filter(self, client, org, headers):
        read = NotificationService.create(user_id=org.bob.id, message="read")
        NotificationService.create(user_id=org.bob.id, message="unread")
        NotificationService.mark_read(org.bob.id, read.id)

        data = client.get(f"{API}?unread_only=true", headers=headers(org.bob)).get_json()
        assert [n["message"] for n in data["items"]] == ["unread"]

    def test_mark_read_endpoint(self, client, org, headers):
        notif_id = NotificationService.create(user_id=org.bob.id, message="ping").id
        res = client.post(f"{API}/{notif_id}/read", headers=headers(org.bob))
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True
        assert res.get_json()["read_at"] is not None

        count = client.get(f"{API}/unread-count", headers=headers(org.bob)).get_json()
        assert count == {"unread_count": 0}

    def test_cannot_mark_someone_elses(self, client, org, headers):
        notif_id = NotificationService.create(user_id=org.bob.id, message="ping").id
        res = client.post(f"{API}/{notif_id}/read", headers=headers(org.carol))
        assert res.status_code == 404
        db.session.expire_all()
        assert db.session.get(AppNotification, notif_id).is_read is False

    def test_read_all(self, client, org, headers):
        NotificationService.create(user_id=org.bob.id, message="a")
        NotificationService.create(user_id=org.bob.id, message="b")
        res = client.post(f"{API}/read-all", headers=headers(org.bob))
        assert res.get_json() == {"marked_read": 2}

    def test_requires_identity(self, client, org):
        assert client.get(API).status_code == 401
