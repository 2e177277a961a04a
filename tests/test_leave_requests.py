"""Tests for manager leave requests."""

from plotdesk.models.models import LeaveRequest, LeaveStatus, Notification


def _submit(client, manager, auth, **overrides):
    body = {"start_date": "2030-03-01", "end_date": "2030-03-03", "reason": "Family function"}
    body.update(overrides)
    return client.post("/leave-requests", json=body, headers=auth(manager))


class TestSubmitLeave:

    def test_manager_submits(self, client, manager, auth):
        response = _submit(client, manager, auth)

        assert response.status_code == 201
        assert response.json()["status"] == "PENDING"
        assert response.json()["user_id"] == str(manager.id)

    def test_end_before_start(self, client, manager, auth):
        response = _submit(client, manager, auth, end_date="2030-02-28")
        assert response.status_code == 400
        assert response.json()["details"]["field"] == "end_date"

    def test_blank_reason(self, client, manager, auth):
        response = _submit(client, manager, auth, reason="   ")
        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_FIELD"

    def test_clients_cannot_submit(self, client, visitor, auth):
        assert _submit(client, visitor, auth).status_code == 403

    def test_manager_lists_own(self, client, manager, other_manager, auth):
        _submit(client, manager, auth)
        _submit(client, other_manager, auth)

        mine = client.get("/leave-requests/mine", headers=auth(manager)).json()

        assert len(mine) == 1


class TestDecideLeave:

    def test_approve_notifies_manager(self, client, db, admin, manager, auth):
        leave_id = _submit(client, manager, auth).json()["id"]

        response = client.patch(f"/leave-requests/{leave_id}", json={"action": "approve"}, headers=auth(admin))

        assert response.status_code == 200
        assert response.json()["status"] == "APPROVED"
        assert response.json()["decided_by"] == str(admin.id)
        notif = db.query(Notification).filter(Notification.user_id == manager.id).one()
        assert notif.type == "LEAVE_REQUEST_APPROVED"
        assert "2030-03-01" in notif.message

    def test_reject_requires_reason(self, client, db, admin, manager, auth):
        leave_id = _submit(client, manager, auth).json()["id"]

        response = client.patch(f"/leave-requests/{leave_id}", json={"action": "REJECT"}, headers=auth(admin))

        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_FIELD"
        assert db.query(LeaveRequest).one().status == LeaveStatus.PENDING

    def test_reject_with_reason(self, client, db, admin, manager, auth):
        leave_id = _submit(client, manager, auth).json()["id"]

        response = client.patch(
            f"/leave-requests/{leave_id}",
            json={"action": "REJECT", "rejection_reason": "Quarter close"},
            headers=auth(admin),
        )

        assert response.json()["status"] == "REJECTED"
        assert response.json()["rejection_reason"] == "Quarter close"
        notif = db.query(Notification).filter(Notification.user_id == manager.id).one()
        assert notif.message.endswith("Reason: Quarter close")

    def test_second_decision_is_invalid_transition(self, client, admin, manager, auth):
        leave_id = _submit(client, manager, auth).json()["id"]
        client.patch(f"/leave-requests/{leave_id}", json={"action": "APPROVE"}, headers=auth(admin))

        response = client.patch(
            f"/leave-requests/{leave_id}",
            json={"action": "REJECT", "rejection_reason": "changed mind"},
            headers=auth(admin),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATE_TRANSITION"

    def test_unknown_action(self, client, admin, manager, auth):
        leave_id = _submit(client, manager, auth).json()["id"]
        response = client.patch(f"/leave-requests/{leave_id}", json={"action": "MAYBE"}, headers=auth(admin))
        assert response.status_code == 400

    def test_admin_lists_newest_first(self, client, admin, manager, auth):
        _submit(client, manager, auth, reason="first")
        _submit(client, manager, auth, reason="second")

        listed = client.get("/leave-requests", headers=auth(admin)).json()

        assert [lr["reason"] for lr in listed] == ["second", "first"]

    def test_managers_cannot_decide(self, client, manager, auth):
        leave_id = _submit(client, manager, auth).json()["id"]
        response = client.patch(f"/leave-requests/{leave_id}", json={"action": "APPROVE"}, headers=auth(manager))
        assert response.status_code == 403
