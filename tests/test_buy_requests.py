"""Tests for the buy-request lifecycle endpoints."""

import uuid

import pytest

from plotdesk.models.models import BuyRequest, BuyStatus, Land, Notification, PlotStatus


def _types_for(db, user):
    rows = db.query(Notification).filter(Notification.user_id == user.id).order_by(Notification.created_at.asc()).all()
    return [n.type for n in rows]


@pytest.fixture
def enquiry(land):
    return {"name": "Chitra Client", "phone": "+91 98765 43210", "message": "Is it corner facing?", "land_id": str(land.id)}


def _submit(client, enquiry, headers=None):
    return client.post("/buy-requests", json=enquiry, headers=headers or {})


def _assign(client, request_id, manager, admin_headers):
    return client.patch(
        f"/buy-requests/{request_id}/assign",
        json={"manager_id": manager.external_id},
        headers=admin_headers,
    )


def _stored(db, request_id):
    buy = db.get(BuyRequest, uuid.UUID(request_id))
    db.refresh(buy)
    return buy


class TestSubmitBuyRequest:
    """Tests for POST /buy-requests."""

    def test_submission_is_pending(self, client, enquiry):
        response = _submit(client, enquiry)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["user_id"] is None
        assert data["land"]["number"] == "14"
        assert data["land"]["plot_title"] == "Plot A-12"

    def test_selected_land_alias_is_accepted(self, client, land):
        response = _submit(client, {"name": "Ravi", "phone": "9876543210", "selectedLandId": str(land.id)})
        assert response.status_code == 201
        assert response.json()["message"] is None

    def test_signed_in_submitter_is_linked(self, client, enquiry, visitor, auth):
        response = _submit(client, enquiry, auth(visitor))
        assert response.json()["user_id"] == str(visitor.id)

    def test_missing_name(self, client, enquiry):
        enquiry["name"] = "  "
        response = _submit(client, enquiry)

        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_FIELD"
        assert response.json()["details"]["field"] == "name"

    def test_invalid_phone(self, client, enquiry):
        enquiry["phone"] = "call me"
        response = _submit(client, enquiry)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_FORMAT"

    def test_unknown_land_is_not_found(self, client, db, enquiry):
        enquiry["land_id"] = "00000000-0000-0000-0000-000000000000"
        response = _submit(client, enquiry)

        assert response.status_code == 404
        assert db.query(BuyRequest).count() == 0

    def test_land_owner_is_notified(self, client, db, enquiry, land, visitor):
        land.owner_id = visitor.id
        db.commit()

        _submit(client, enquiry)

        notif = db.query(Notification).filter(Notification.user_id == visitor.id).one()
        assert notif.type == "BUY_REQUEST_UPDATED"
        assert notif.message == "New buy request for Plot A-12 - Plot 14"


class TestBuyRequestLifecycle:

    def test_assign_notifies_manager_and_buyer(self, client, db, enquiry, admin, manager, visitor, auth):
        created = _submit(client, enquiry, auth(visitor)).json()

        response = _assign(client, created["id"], manager, auth(admin))

        assert response.status_code == 200
        assert response.json()["status"] == "ASSIGNED"
        assert response.json()["assigned_manager"]["name"] == "Manoj Manager"
        assert _types_for(db, manager) == ["BUY_REQUEST_ASSIGNED"]
        assert _types_for(db, visitor) == ["BUY_REQUEST_UPDATED"]

    def test_assign_to_inactive_manager_is_forbidden(self, client, db, enquiry, admin, manager, auth):
        created = _submit(client, enquiry).json()
        manager.is_active = False
        db.commit()

        response = _assign(client, created["id"], manager, auth(admin))

        assert response.status_code == 403
        assert _stored(db, created["id"]).status == BuyStatus.PENDING

    def test_assign_to_non_manager_is_forbidden(self, client, enquiry, admin, visitor, auth):
        created = _submit(client, enquiry).json()
        assert _assign(client, created["id"], visitor, auth(admin)).status_code == 403

    def test_accept_then_complete_sells_land_to_buyer(self, client, db, enquiry, land, admin, manager, visitor, auth):
        created = _submit(client, enquiry, auth(visitor)).json()
        _assign(client, created["id"], manager, auth(admin))

        accepted = client.post(f"/buy-requests/{created['id']}/accept", headers=auth(manager))
        completed = client.post(f"/buy-requests/{created['id']}/complete", headers=auth(manager))

        assert accepted.json()["status"] == "ACCEPTED"
        assert completed.status_code == 200
        assert completed.json()["status"] == "COMPLETED"
        db.refresh(land)
        assert land.status == PlotStatus.SOLD
        assert land.owner_id == visitor.id
        assert _types_for(db, visitor)[-2:] == ["BUY_REQUEST_ACCEPTED", "BUY_REQUEST_COMPLETED"]

    def test_admin_can_complete(self, client, db, enquiry, land, admin, manager, auth):
        created = _submit(client, enquiry).json()
        _assign(client, created["id"], manager, auth(admin))
        client.post(f"/buy-requests/{created['id']}/accept", headers=auth(manager))

        response = client.post(f"/buy-requests/{created['id']}/complete", headers=auth(admin))

        assert response.json()["status"] == "COMPLETED"
        db.refresh(land)
        assert land.status == PlotStatus.SOLD
        assert land.owner_id is None

    def test_complete_before_accept_is_invalid_transition(self, client, enquiry, admin, manager, auth):
        created = _submit(client, enquiry).json()
        _assign(client, created["id"], manager, auth(admin))

        response = client.post(f"/buy-requests/{created['id']}/complete", headers=auth(admin))

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATE_TRANSITION"
        assert response.json()["details"]["current_status"] == "ASSIGNED"

    def test_reject_requires_reason(self, client, db, enquiry, admin, manager, auth):
        created = _submit(client, enquiry).json()
        _assign(client, created["id"], manager, auth(admin))

        response = client.post(f"/buy-requests/{created['id']}/reject", json={}, headers=auth(manager))

        assert response.status_code == 400
        assert _stored(db, created["id"]).status == BuyStatus.ASSIGNED

    def test_reject_records_reason_and_blocks_accept(self, client, db, enquiry, admin, manager, auth):
        created = _submit(client, enquiry).json()
        _assign(client, created["id"], manager, auth(admin))

        rejected = client.post(
            f"/buy-requests/{created['id']}/reject",
            json={"reason": "  Price not agreed "},
            headers=auth(manager),
        )
        accepted = client.post(f"/buy-requests/{created['id']}/accept", headers=auth(manager))

        assert rejected.json()["rejection_reason"] == "Price not agreed"
        assert accepted.status_code == 400
        assert _stored(db, created["id"]).status == BuyStatus.REJECTED

    def test_other_manager_cannot_accept(self, client, db, enquiry, admin, manager, other_manager, auth):
        created = _submit(client, enquiry).json()
        _assign(client, created["id"], manager, auth(admin))

        response = client.post(f"/buy-requests/{created['id']}/accept", headers=auth(other_manager))

        assert response.status_code == 403
        assert _stored(db, created["id"]).status == BuyStatus.ASSIGNED


class TestBuyRequestListing:

    def test_views_by_role(self, client, db, enquiry, land, admin, manager, visitor, other_manager, auth):
        land.owner_id = other_manager.id
        db.commit()
        created = _submit(client, enquiry, auth(visitor)).json()
        _assign(client, created["id"], manager, auth(admin))

        assert [b["id"] for b in client.get("/buy-requests/mine", headers=auth(visitor)).json()] == [created["id"]]
        assert [b["id"] for b in client.get("/buy-requests/assigned", headers=auth(manager)).json()] == [created["id"]]
        received = client.get("/buy-requests/received", headers=auth(other_manager)).json()
        assert [b["id"] for b in received] == [created["id"]]
        assert client.get("/buy-requests", headers=auth(admin)).json()[0]["id"] == created["id"]
        assert client.get("/buy-requests", headers=auth(visitor)).status_code == 403

    def test_detail_hidden_from_strangers(self, client, enquiry, other_manager, visitor, auth):
        created = _submit(client, enquiry, auth(visitor)).json()

        assert client.get(f"/buy-requests/{created['id']}", headers=auth(visitor)).status_code == 200
        assert client.get(f"/buy-requests/{created['id']}", headers=auth(other_manager)).status_code == 403

    def test_manager_stats_count_buy_requests(self, client, db, enquiry, admin, manager, auth):
        created = _submit(client, enquiry).json()
        _assign(client, created["id"], manager, auth(admin))

        managers = client.get("/visit-requests/managers", headers=auth(admin)).json()

        stats = {m["external_id"]: m["stats"] for m in managers}["user_m1"]
        assert stats["buy_requests"] == 1
        assert stats["visit_requests"] == 0
        assert stats["total_assignments"] == 1
        assert db.query(Land).count() == 1
