"""Service-level tests for validation, races and failure handling of the visit engine."""

from datetime import timedelta

import pytest

from plotdesk.errors import (
    Conflict,
    InvalidDate,
    InvalidFormat,
    MissingField,
    PastDate,
)
from plotdesk.models.models import Notification, VisitRequest, VisitStatus
from plotdesk.services import notifications as notifications_service
from plotdesk.services import visit_requests as svc


class TestValidateSubmission:
    """Tests for validate_submission ordering and normalisation."""

    def test_valid_form_is_cleaned(self, booking):
        data = svc.validate_submission({**booking, "visitor_name": "  Chitra  ", "email": "A@B.IO"})

        assert data["name"] == "Chitra"
        assert data["email"] == "a@b.io"
        assert data["time"] == "10:30"

    def test_first_missing_field_is_reported(self, booking):
        booking["visitor_name"] = ""
        booking["plot_id"] = ""
        with pytest.raises(MissingField) as exc:
            svc.validate_submission(booking)
        assert exc.value.details["field"] == "visitor_name"

    def test_missing_beats_bad_email(self, booking):
        booking["email"] = "nope"
        booking["visit_time"] = None
        with pytest.raises(MissingField):
            svc.validate_submission(booking)

    @pytest.mark.parametrize("email", ["plain", "a@b", "a b@c.io", "@c.io"])
    def test_bad_email(self, booking, email):
        booking["email"] = email
        with pytest.raises(InvalidFormat) as exc:
            svc.validate_submission(booking)
        assert exc.value.details["field"] == "email"

    @pytest.mark.parametrize("phone", ["12ab567890", "12345", "phone"])
    def test_bad_phone(self, booking, phone):
        booking["phone"] = phone
        with pytest.raises(InvalidFormat) as exc:
            svc.validate_submission(booking)
        assert exc.value.details["field"] == "phone"

    def test_unparseable_date(self, booking):
        booking["visit_date"] = "31/12/2030"
        with pytest.raises(InvalidDate):
            svc.validate_submission(booking)

    def test_past_date(self, booking):
        booking["visit_date"] = (svc.today_local() - timedelta(days=1)).isoformat()
        with pytest.raises(PastDate):
            svc.validate_submission(booking)

    def test_today_is_allowed(self, booking):
        booking["visit_date"] = svc.today_local().isoformat()
        assert svc.validate_submission(booking)["date"] == svc.today_local()

    def test_iso_timestamp_is_truncated_to_date(self, booking, tomorrow):
        booking["visit_date"] = f"{tomorrow}T00:00:00.000Z"
        assert svc.validate_submission(booking)["date"].isoformat() == tomorrow

    @pytest.mark.parametrize("slot", ["25:00", "10:60", "10am", "1030"])
    def test_bad_time(self, booking, slot):
        booking["visit_time"] = slot
        with pytest.raises(InvalidFormat) as exc:
            svc.validate_submission(booking)
        assert exc.value.details["field"] == "visit_time"

    def test_malformed_plot_id(self, booking):
        booking["plot_id"] = "plot-12"
        with pytest.raises(InvalidFormat):
            svc.validate_submission(booking)


class TestConcurrency:
    """A transition predicated on a stale status must write nothing."""

    def test_transition_on_stale_status_conflicts(self, db, booking):
        visit = svc.submit_visit_request(db, booking)
        db.query(VisitRequest).filter(VisitRequest.id == visit.id).update(
            {"status": VisitStatus.REJECTED}, synchronize_session=False
        )

        with pytest.raises(Conflict):
            svc._transition(db, visit, VisitStatus.PENDING, {"status": VisitStatus.ASSIGNED})

    def test_lost_race_on_accept_rolls_back(self, db, booking, manager, monkeypatch):
        visit = svc.submit_visit_request(db, booking)
        svc.assign_manager(db, visit.id, manager.external_id)

        def racing_qr(payload):
            # Another caller decides the request between our read and our write
            db.query(VisitRequest).filter(VisitRequest.id == visit.id).update(
                {"status": VisitStatus.REJECTED, "rejection_reason": "raced"}, synchronize_session=False
            )
            return "data:image/png;base64,AAAA"

        monkeypatch.setattr(svc, "make_qr_data_url", racing_qr)

        with pytest.raises(Conflict):
            svc.accept_visit_request(db, visit.id, manager)

        stored = db.get(VisitRequest, visit.id)
        db.refresh(stored)
        assert stored.status == VisitStatus.ASSIGNED
        assert stored.qr_code is None
        assert stored.rejection_reason is None


class TestNotificationFailure:
    """A failing notification write never fails the transition."""

    def test_accept_succeeds_when_notification_write_fails(self, db, booking, visitor, manager, monkeypatch):
        visit = svc.submit_visit_request(db, booking, external_id=visitor.external_id)
        svc.assign_manager(db, visit.id, manager.external_id)
        before = db.query(Notification).count()

        def broken(**kwargs):
            raise RuntimeError("outbox unavailable")

        monkeypatch.setattr(notifications_service, "Notification", broken)

        accepted = svc.accept_visit_request(db, visit.id, manager)

        assert accepted.status == VisitStatus.APPROVED
        assert accepted.qr_code.startswith("data:image/png;base64,")
        assert db.query(Notification).count() == before

    def test_guest_transitions_write_no_notifications(self, db, booking, manager):
        visit = svc.submit_visit_request(db, booking)
        svc.assign_manager(db, visit.id, manager.external_id)
        svc.reject_visit_request(db, visit.id, manager, "Not today")

        types = [n.type for n in db.query(Notification).all()]
        assert types == ["VISIT_REQUEST_ASSIGNED"]


class TestDuplicateCheckToggle:
    def test_duplicates_allowed_when_check_disabled(self, db, booking, monkeypatch):
        monkeypatch.setattr(svc.settings, "visit_duplicate_check", False)

        svc.submit_visit_request(db, booking)
        svc.submit_visit_request(db, booking)

        assert db.query(VisitRequest).count() == 2


class TestValidityWindow:
    def test_window_follows_setting(self, db, booking, manager, monkeypatch):
        monkeypatch.setattr(svc.settings, "visit_qr_validity_minutes", 90)
        visit = svc.submit_visit_request(db, booking)
        svc.assign_manager(db, visit.id, manager.external_id)

        accepted = svc.accept_visit_request(db, visit.id, manager)

        assert accepted.expires_at - accepted.updated_at == timedelta(minutes=90)
