"""Tests for the notification outbox and its endpoints."""

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from plotdesk.db import Base, build_engine
from plotdesk.models.models import Notification, Role, User, utcnow
from plotdesk.services import notifications as notifications_service
from plotdesk.services.notifications import (
    dispatch_pending,
    enqueue_notification,
    send_buy_notification,
    send_visit_notification,
)


class TestOutbox:

    def test_enqueue_writes_pending_row(self, db, visitor):
        n = enqueue_notification(db, visitor.id, "TEST", "Hello", "World")
        db.commit()

        assert n is not None
        stored = db.query(Notification).one()
        assert stored.status == "pending"
        assert stored.read is False

    def test_visit_notification_renders_template(self, db, visitor):
        n = send_visit_notification(db, visitor.id, "rejected", plot_title="Plot A-12", reason="Flooded")
        assert n.type == "VISIT_REQUEST_REJECTED"
        assert n.message.endswith("Reason: Flooded")

    def test_visit_notification_without_recipient_is_skipped(self, db):
        assert send_visit_notification(db, None, "approved", plot_title="x") is None
        assert db.query(Notification).count() == 0

    def test_dispatch_marks_sent(self, db, visitor):
        enqueue_notification(db, visitor.id, "TEST", "a", "b")
        enqueue_notification(db, visitor.id, "TEST", "c", "d")
        db.commit()

        result = dispatch_pending(db)

        assert result == {"sent": 2, "failed": 0}
        rows = db.query(Notification).all()
        assert {r.status for r in rows} == {"sent"}
        assert all(r.sent_at is not None and r.attempts == 1 for r in rows)
        assert dispatch_pending(db) == {"sent": 0, "failed": 0}

    def test_delivery_failure_is_recorded_and_retried(self, db, visitor, monkeypatch):
        monkeypatch.setattr(notifications_service.settings, "enable_email", True)
        monkeypatch.setattr(notifications_service.settings, "smtp_host", "smtp.test")
        monkeypatch.setattr(notifications_service.settings, "mail_from", "noreply@test")

        def smtp_down(to, subject, body):
            raise OSError("smtp down")

        monkeypatch.setattr(notifications_service, "send_email", smtp_down)
        enqueue_notification(db, visitor.id, "TEST", "a", "b")
        db.commit()

        assert dispatch_pending(db) == {"sent": 0, "failed": 1}
        row = db.query(Notification).one()
        assert row.status == "failed"
        assert row.error_message == "smtp down"

        sent = []
        monkeypatch.setattr(notifications_service, "send_email", lambda to, subject, body: sent.append(to))

        assert dispatch_pending(db) == {"sent": 1, "failed": 0}
        db.refresh(row)
        assert row.status == "sent"
        assert row.attempts == 2
        assert sent == ["client@example.com"]

    def test_failed_rows_stop_after_max_attempts(self, db, visitor, monkeypatch):
        monkeypatch.setattr(notifications_service.settings, "notification_max_attempts", 1)
        n = enqueue_notification(db, visitor.id, "TEST", "a", "b")
        n.status = "failed"
        n.attempts = 1
        db.commit()

        assert dispatch_pending(db) == {"sent": 0, "failed": 0}

    def test_buy_notification_renders_template(self, db, visitor):
        n = send_buy_notification(db, visitor.id, "received", plot_title="Green Meadows Phase 1", land_number="14")
        assert n.type == "BUY_REQUEST_UPDATED"
        assert n.message == "New buy request for Green Meadows Phase 1 - Plot 14"


class TestDispatchClaims:
    """Rows are claimed (status sending) before delivery so each is sent once."""

    @pytest.fixture
    def workers(self, tmp_path):
        """Two sessions on separate connections to one file database."""
        engine = build_engine(f"sqlite:///{tmp_path / 'outbox.db'}")
        Base.metadata.create_all(bind=engine)
        factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
        first, second = factory(), factory()
        yield first, second
        first.close()
        second.close()
        engine.dispose()

    def test_rows_claimed_by_another_worker_are_skipped(self, workers, monkeypatch):
        worker_a, worker_b = workers
        user = User(external_id="user_outbox", name="Outbox", email="outbox@example.com", role=Role.CLIENT)
        worker_a.add(user)
        worker_a.commit()
        enqueue_notification(worker_a, user.id, "TEST", "a", "b")
        enqueue_notification(worker_a, user.id, "TEST", "c", "d")
        worker_a.commit()

        delivered = []
        monkeypatch.setattr(notifications_service, "_deliver", lambda db, n: delivered.append(n.id))
        read_candidates = notifications_service._candidates

        def interleaved(db, limit):
            rows = read_candidates(db, limit)
            if db is worker_a:
                # Worker B drains the same rows between A's read and A's claim
                db.rollback()
                assert dispatch_pending(worker_b) == {"sent": 2, "failed": 0}
            return rows

        monkeypatch.setattr(notifications_service, "_candidates", interleaved)

        assert dispatch_pending(worker_a) == {"sent": 0, "failed": 0}
        assert len(delivered) == 2
        assert len(set(delivered)) == 2
        rows = worker_a.query(Notification).all()
        assert {r.status for r in rows} == {"sent"}
        assert all(r.attempts == 1 for r in rows)

    def test_stale_claim_is_taken_over(self, db, visitor):
        n = enqueue_notification(db, visitor.id, "TEST", "a", "b")
        n.status = "sending"
        n.attempts = 1
        n.claimed_at = utcnow() - timedelta(hours=1)
        db.commit()

        assert dispatch_pending(db) == {"sent": 1, "failed": 0}
        db.refresh(n)
        assert n.status == "sent"
        assert n.attempts == 2

    def test_live_claim_is_left_alone(self, db, visitor):
        n = enqueue_notification(db, visitor.id, "TEST", "a", "b")
        n.status = "sending"
        n.attempts = 1
        n.claimed_at = utcnow()
        db.commit()

        assert dispatch_pending(db) == {"sent": 0, "failed": 0}
        db.refresh(n)
        assert n.status == "sending"


class TestNotificationRoutes:

    def _seed(self, db, user, count=3):
        for i in range(count):
            enqueue_notification(db, user.id, "TEST", f"title {i}", "msg")
        db.commit()

    def test_list_and_unread_count(self, client, db, visitor, auth):
        self._seed(db, visitor)

        listed = client.get("/notifications", headers=auth(visitor))
        count = client.get("/notifications/unread-count", headers=auth(visitor))

        assert listed.status_code == 200
        assert len(listed.json()) == 3
        assert count.json() == {"count": 3}

    def test_mark_one_read(self, client, db, visitor, auth):
        self._seed(db, visitor, count=2)
        target = client.get("/notifications", headers=auth(visitor)).json()[0]["id"]

        response = client.patch(f"/notifications/{target}/read", headers=auth(visitor))

        assert response.status_code == 200
        assert response.json()["read"] is True
        unread = client.get("/notifications", params={"unread_only": True}, headers=auth(visitor)).json()
        ids = [n["id"] for n in unread]
        assert len(ids) == 1
        assert target not in ids

    def test_cannot_read_someone_elses(self, client, db, visitor, manager, auth):
        self._seed(db, visitor, count=1)
        target = db.query(Notification).one()

        response = client.patch(f"/notifications/{target.id}/read", headers=auth(manager))

        assert response.status_code == 404

    def test_mark_all_read(self, client, db, visitor, auth):
        self._seed(db, visitor)

        response = client.patch("/notifications/read-all", headers=auth(visitor))

        assert response.json()["updated"] == 3
        assert client.get("/notifications/unread-count", headers=auth(visitor)).json() == {"count": 0}

    def test_admin_dispatch(self, client, db, visitor, admin, auth):
        self._seed(db, visitor, count=2)

        response = client.post("/notifications/dispatch", headers=auth(admin))

        assert response.status_code == 200
        assert response.json() == {"sent": 2, "failed": 0}

    def test_dispatch_requires_admin(self, client, visitor, auth):
        assert client.post("/notifications/dispatch", headers=auth(visitor)).status_code == 403
