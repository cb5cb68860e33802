"""
Workflow API tests (/api/v1/admin/workflows).

Tests cover:
  - create via template and custom steps; body validation
  - detail + progress, list, templates
  - PATCH actions including approve/reject and the step ownership check
  - auth: 401 without token, 403 without users.manage, 404 across tenants
"""

import pytest

BASE = "/api/v1/admin/workflows"


@pytest.fixture()
def target(tenant, make_user):
    return make_user(tenant, "leaver@acme-accounting.com", "STAFF")


@pytest.fixture()
def headers(admin, auth_headers):
    return auth_headers(admin)


def _create(client, headers, body):
    res = client.post(BASE, json=body, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()["workflow"]


class TestCreate:
    def test_create_from_type(self, client, headers, target):
        wf = _create(client, headers, {"userId": target.id, "type": "OFFBOARDING"})
        assert wf["workflow_type"] == "OFFBOARDING"
        assert len(wf["steps"]) == 4
        assert wf["steps"][0]["requires_approval"] is True

    def test_create_custom(self, client, headers, target):
        wf = _create(client, headers, {
            "userId": target.id,
            "type": "ROLE_CHANGE",
            "steps": [{"name": "Promote", "action_type": "ASSIGN_ROLE", "config": {"role": "TEAM_LEAD"}}],
        })
        assert wf["total_steps"] == 1
        assert wf["template_key"] is None

    def test_user_id_required(self, client, headers):
        res = client.post(BASE, json={"type": "ONBOARDING"}, headers=headers)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_invalid_type_is_422(self, client, headers, target):
        res = client.post(BASE, json={"userId": target.id, "type": "PROMOTION", "steps": [
            {"name": "x", "action_type": "SEND_EMAIL"},
        ]}, headers=headers)
        assert res.status_code == 422
        assert "valid_types" in res.get_json()["details"]

    def test_unknown_user_is_404(self, client, headers):
        res = client.post(BASE, json={"userId": 4242}, headers=headers)
        assert res.status_code == 404
        assert res.get_json()["error"] == "User not found"

    def test_non_json_body_is_415(self, client, headers):
        res = client.post(BASE, data="userId=1", headers={**headers, "Content-Type": "text/plain"})
        assert res.status_code == 415


class TestReadAndActions:
    def test_detail_and_list(self, client, headers, target):
        wf = _create(client, headers, {"userId": target.id})
        res = client.get(f"{BASE}/{wf['id']}", headers=headers)
        assert res.status_code == 200
        body = res.get_json()
        assert body["progress"]["current_step"]["step_number"] == 1

        listing = client.get(f"{BASE}?status=DRAFT", headers=headers).get_json()
        assert listing["pagination"]["total"] == 1
        assert listing["workflows"][0]["id"] == wf["id"]

    def test_templates(self, client, headers):
        res = client.get(f"{BASE}/templates", headers=headers)
        keys = {t["key"] for t in res.get_json()["templates"]}
        assert keys == {"onboarding-standard", "offboarding-standard", "role-change-standard"}

    def test_execute_approve_execute(self, client, headers, target):
        wf = _create(client, headers, {"userId": target.id, "type": "OFFBOARDING"})
        url = f"{BASE}/{wf['id']}"

        res = client.patch(url, json={"action": "execute"}, headers=headers)
        assert res.get_json()["status"] == "PENDING"
        assert res.get_json()["success"] is False

        pending = client.get(f"{BASE}/approvals/pending", headers=headers).get_json()
        assert pending["total"] == 1
        step_id = pending["approvals"][0]["id"]

        res = client.patch(url, json={"action": "APPROVE_STEP", "stepId": step_id}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["step"]["approved_at"] is not None

        res = client.patch(url, json={"action": "EXECUTE"}, headers=headers)
        assert res.get_json()["status"] == "COMPLETED"

        notes = client.get(f"{url}/notifications", headers=headers).get_json()["notifications"]
        assert any(n["event"] == "WORKFLOW_COMPLETED" for n in notes)

    def test_reject_step(self, client, headers, target):
        wf = _create(client, headers, {"userId": target.id, "type": "OFFBOARDING"})
        url = f"{BASE}/{wf['id']}"
        client.patch(url, json={"action": "EXECUTE"}, headers=headers)
        res = client.patch(url, json={"action": "REJECT_STEP", "stepId": wf["steps"][0]["id"],
                                      "reason": "Client handover incomplete"}, headers=headers)
        assert res.get_json()["success"] is False
        detail = client.get(url, headers=headers).get_json()
        assert detail["workflow"]["status"] == "FAILED"

    def test_step_from_another_workflow_is_404(self, client, headers, target):
        first = _create(client, headers, {"userId": target.id, "type": "OFFBOARDING"})
        second = _create(client, headers, {"userId": target.id, "type": "OFFBOARDING"})
        res = client.patch(f"{BASE}/{first['id']}", json={
            "action": "APPROVE_STEP", "stepId": second["steps"][0]["id"],
        }, headers=headers)
        assert res.status_code == 404

    def test_pause_resume_cancel(self, client, headers, target):
        wf = _create(client, headers, {"userId": target.id, "type": "ROLE_CHANGE"})
        url = f"{BASE}/{wf['id']}"
        assert client.patch(url, json={"action": "PAUSE"}, headers=headers).get_json()["status"] == "PAUSED"
        # gated first step: resume runs until the approval gate
        assert client.patch(url, json={"action": "RESUME"}, headers=headers).get_json()["status"] == "PENDING"
        res = client.patch(url, json={"action": "CANCEL", "reason": "Reorg"}, headers=headers)
        assert res.get_json() == {"success": True, "status": "CANCELLED"}

        res = client.patch(url, json={"action": "RESUME"}, headers=headers)
        assert res.status_code == 409
        assert res.get_json()["details"]["current_status"] == "CANCELLED"

    def test_invalid_action(self, client, headers, target):
        wf = _create(client, headers, {"userId": target.id})
        res = client.patch(f"{BASE}/{wf['id']}", json={"action": "EXPLODE"}, headers=headers)
        assert res.status_code == 400


class TestAccess:
    def test_requires_token(self, client):
        res = client.get(BASE)
        assert res.status_code == 401

    def test_staff_is_forbidden(self, client, staff_user, auth_headers):
        res = client.get(BASE, headers=auth_headers(staff_user))
        assert res.status_code == 403
        assert res.get_json()["details"] == {"required": "users.manage"}

    def test_other_tenant_reads_404(self, client, headers, target, other_tenant, make_user, auth_headers):
        wf = _create(client, headers, {"userId": target.id})
        outsider = make_user(other_tenant, "admin@rival-accounting.com", "ADMIN")
        res = client.get(f"{BASE}/{wf['id']}", headers=auth_headers(outsider))
        assert res.status_code == 404
        assert res.get_json()["error"] == "UserWorkflow not found"
