"""
User lifecycle workflow tests (builder, executor, approvals, notifications).

Tests cover:
  - template / custom creation and validation
  - full onboarding run with progress and completion notifications
  - approval gate halts the run; approve → continue; reject → FAILED
  - failing step → FAILED workflow, savepoint keeps no partial change, retry
  - pause / resume / cancel transitions
  - scheduled workflows and tenant isolation
"""

from datetime import datetime, timedelta, timezone

import pytest

from admin_console.core.exceptions import NotFoundError, StateTransitionError, ValidationError
from admin_console.models import db
from admin_console.models.audit import AuditLog
from admin_console.models.workflow import WorkflowNotification
from admin_console.services import approval_manager, workflow_builder, workflow_executor
from admin_console.services.notification_manager import NotificationManager


@pytest.fixture()
def invited(tenant, make_user):
    return make_user(tenant, "new.hire@acme-accounting.com", "CLIENT", status="INVITED")


def _events(workflow_id):
    return [n.event for n in NotificationManager.list_for_workflow(workflow_id)]


# ═════════════════════════════════════════════════════════════════════════
# Builder
# ═════════════════════════════════════════════════════════════════════════

class TestBuilder:
    def test_default_template_is_onboarding(self, tenant, admin, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id, triggered_by=admin.id)
        assert wf.workflow_type == "ONBOARDING"
        assert wf.status == "DRAFT"
        assert wf.template_key == "onboarding-standard"
        assert [s.step_number for s in wf.steps] == [1, 2, 3, 4]
        assert all(s.status == "PENDING" for s in wf.steps)
        assert AuditLog.query.filter_by(action="workflow.create").count() == 1

    def test_template_type_mismatch(self, tenant, invited):
        with pytest.raises(ValidationError):
            workflow_builder.create_workflow_from_template(
                tenant.id, invited.id, template_id="offboarding-standard", workflow_type="ONBOARDING",
            )

    def test_unknown_template(self, tenant, invited):
        with pytest.raises(NotFoundError):
            workflow_builder.create_workflow_from_template(tenant.id, invited.id, template_id="nope")

    def test_overrides_merge_into_step_config(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(
            tenant.id, invited.id, overrides={"3": {"role": "STAFF"}},
        )
        assert wf.steps[2].config == {"role": "STAFF"}

    def test_custom_workflow_requires_valid_steps(self, tenant, invited):
        with pytest.raises(ValidationError):
            workflow_builder.create_custom_workflow(tenant.id, invited.id, "ONBOARDING", [])
        with pytest.raises(ValidationError):
            workflow_builder.create_custom_workflow(
                tenant.id, invited.id, "ONBOARDING", [{"name": "x", "action_type": "DANCE"}],
            )

    def test_user_of_other_tenant_is_not_found(self, other_tenant, invited):
        with pytest.raises(NotFoundError):
            workflow_builder.create_workflow_from_template(other_tenant.id, invited.id)

    def test_scheduled_workflow_starts_pending(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(
            tenant.id, invited.id, scheduled_for="2030-01-01T09:00:00Z",
        )
        assert wf.status == "PENDING"
        assert wf.scheduled_for is not None


# ═════════════════════════════════════════════════════════════════════════
# Execution
# ═════════════════════════════════════════════════════════════════════════

class TestExecution:
    def test_onboarding_runs_to_completion(self, tenant, admin, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id, triggered_by=admin.id)
        result = workflow_executor.execute_workflow(wf.id, tenant.id, admin.id)

        assert result["success"] is True
        assert result["status"] == "COMPLETED"
        assert result["progress_percent"] == 100
        db.session.refresh(invited)
        assert invited.status == "ACTIVE"
        assert invited.role == "TEAM_MEMBER"
        assert "dashboard.view" in invited.permissions
        events = _events(wf.id)
        assert events.count("STEP_EMAIL") == 1
        # user + triggering admin
        assert events.count("WORKFLOW_COMPLETED") == 2

    def test_progress_reports_current_step(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        progress = workflow_executor.get_workflow_progress(wf.id, tenant.id)
        assert progress["completed_steps"] == 0
        assert progress["current_step"]["step_number"] == 1

    def test_completed_workflow_cannot_execute_again(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        workflow_executor.execute_workflow(wf.id, tenant.id)
        with pytest.raises(StateTransitionError):
            workflow_executor.execute_workflow(wf.id, tenant.id)

    def test_failing_step_marks_workflow_failed(self, tenant, admin, invited):
        wf = workflow_builder.create_custom_workflow(tenant.id, invited.id, "ROLE_CHANGE", [
            {"name": "Activate", "action_type": "CREATE_ACCOUNT"},
            {"name": "Role", "action_type": "ASSIGN_ROLE"},
            {"name": "Mail", "action_type": "SEND_EMAIL"},
        ], triggered_by=admin.id)
        result = workflow_executor.execute_workflow(wf.id, tenant.id)

        assert result["success"] is False
        assert result["status"] == "FAILED"
        assert result["error"] == "Role not specified in step configuration"
        assert result["progress_percent"] == 33
        assert [s.status for s in wf.steps] == ["COMPLETED", "FAILED", "PENDING"]
        assert "WORKFLOW_FAILED" in _events(wf.id)

        # fix the step and retry from the failed step
        wf.steps[1].config = {"role": "STAFF"}
        db.session.commit()
        retry = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert retry["status"] == "COMPLETED"
        db.session.refresh(invited)
        assert invited.role == "STAFF"

    def test_failed_handler_leaves_no_partial_change(self, tenant, invited):
        wf = workflow_builder.create_custom_workflow(tenant.id, invited.id, "ONBOARDING", [
            {"name": "Access", "action_type": "PROVISION_ACCESS",
             "config": {"permissions": ["reports.view"], "team_id": 9999}},
        ])
        result = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert result["status"] == "FAILED"
        assert result["error"] == "Team 9999 not found"
        db.session.refresh(invited)
        assert not invited.permissions


# ═════════════════════════════════════════════════════════════════════════
# Approval gate
# ═════════════════════════════════════════════════════════════════════════

class TestApprovals:
    def test_gated_step_halts_until_approved(self, tenant, admin, staff_user):
        wf = workflow_builder.create_workflow_from_template(
            tenant.id, staff_user.id, workflow_type="OFFBOARDING", triggered_by=admin.id,
        )
        first = workflow_executor.execute_workflow(wf.id, tenant.id, admin.id)
        assert first["success"] is False
        assert first["error"] == workflow_executor.AWAITING_APPROVAL
        assert first["status"] == "PENDING"
        assert _events(wf.id).count("APPROVAL_REQUESTED") == 1

        # executing again before approval does not re-send the request
        workflow_executor.execute_workflow(wf.id, tenant.id, admin.id)
        assert _events(wf.id).count("APPROVAL_REQUESTED") == 1

        pending = approval_manager.list_pending_approvals(tenant.id)
        assert [p["id"] for p in pending] == [wf.steps[0].id]

        workflow_executor.approve_step(wf.steps[0].id, tenant.id, admin.id)
        status = approval_manager.get_approval_status(wf.steps[0].id, tenant.id)
        assert status["approved"] is True
        assert status["approved_by"] == admin.id

        done = workflow_executor.execute_workflow(wf.id, tenant.id, admin.id)
        assert done["status"] == "COMPLETED"
        db.session.refresh(staff_user)
        assert staff_user.status == "ARCHIVED"
        assert staff_user.archived_at is not None

    def test_named_approvers_receive_request(self, tenant, staff_user):
        wf = workflow_builder.create_custom_workflow(tenant.id, staff_user.id, "OFFBOARDING", [
            {"name": "Sign-off", "action_type": "REQUEST_APPROVAL", "requires_approval": True,
             "config": {"approvers": ["Partner@Acme-Accounting.com"]}},
        ])
        workflow_executor.execute_workflow(wf.id, tenant.id)
        notes = WorkflowNotification.query.filter_by(event="APPROVAL_REQUESTED").all()
        assert [n.email_to for n in notes] == ["Partner@acme-accounting.com"]

    def test_reject_fails_step_and_workflow(self, tenant, admin, staff_user):
        wf = workflow_builder.create_workflow_from_template(
            tenant.id, staff_user.id, workflow_type="OFFBOARDING",
        )
        workflow_executor.execute_workflow(wf.id, tenant.id)
        step = workflow_executor.reject_step(wf.steps[0].id, tenant.id, admin.id, "still needed")
        assert step.status == "FAILED"
        assert wf.status == "FAILED"
        assert wf.error_message == "Approval rejected: still needed"
        assert approval_manager.list_pending_approvals(tenant.id) == []

    def test_retry_after_reject_asks_again(self, tenant, admin, staff_user):
        wf = workflow_builder.create_workflow_from_template(
            tenant.id, staff_user.id, workflow_type="OFFBOARDING",
        )
        gate = wf.steps[0]
        workflow_executor.execute_workflow(wf.id, tenant.id)
        workflow_executor.reject_step(gate.id, tenant.id, admin.id, "wrong person")

        retry = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert retry["status"] == "PENDING"
        assert retry["error"] == workflow_executor.AWAITING_APPROVAL
        assert gate.status == "PENDING"
        assert [s.status for s in wf.steps[1:]] == ["PENDING"] * (len(wf.steps) - 1)
        assert _events(wf.id).count("APPROVAL_REQUESTED") == 2
        assert approval_manager.get_approval_status(gate.id, tenant.id)["requested_at"] is not None
        db.session.refresh(staff_user)
        assert staff_user.status == "ACTIVE"

        # the fresh request can itself be decided
        workflow_executor.approve_step(gate.id, tenant.id, admin.id)
        assert workflow_executor.execute_workflow(wf.id, tenant.id)["status"] == "COMPLETED"

    def test_approve_ungated_step_is_rejected(self, tenant, admin, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        with pytest.raises(ValidationError):
            workflow_executor.approve_step(wf.steps[0].id, tenant.id, admin.id)

    def test_step_of_other_tenant_is_not_found(self, tenant, other_tenant, admin, staff_user):
        wf = workflow_builder.create_workflow_from_template(
            tenant.id, staff_user.id, workflow_type="OFFBOARDING",
        )
        with pytest.raises(NotFoundError):
            workflow_executor.approve_step(wf.steps[0].id, other_tenant.id, admin.id)


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════

class TestTransitions:
    def test_pause_then_resume(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        workflow_executor.pause_workflow(wf.id, tenant.id)
        assert wf.status == "PAUSED"
        with pytest.raises(StateTransitionError):
            workflow_executor.execute_workflow(wf.id, tenant.id)

        result = workflow_executor.resume_workflow(wf.id, tenant.id)
        assert result["status"] == "COMPLETED"

    def test_resume_continues_after_completed_steps(self, tenant, admin, invited):
        wf = workflow_builder.create_custom_workflow(tenant.id, invited.id, "ONBOARDING", [
            {"name": "Activate", "action_type": "CREATE_ACCOUNT"},
            {"name": "Welcome", "action_type": "SEND_EMAIL"},
            {"name": "Partner sign-off", "action_type": "REQUEST_APPROVAL", "requires_approval": True},
            {"name": "Role", "action_type": "ASSIGN_ROLE", "config": {"role": "STAFF"}},
        ])
        first = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert first["status"] == "PENDING"
        assert first["progress_percent"] == 50
        done_before = [(s.id, s.started_at, s.completed_at, s.duration_ms) for s in wf.steps[:2]]

        workflow_executor.pause_workflow(wf.id, tenant.id)
        workflow_executor.approve_step(wf.steps[2].id, tenant.id, admin.id)
        result = workflow_executor.resume_workflow(wf.id, tenant.id)

        assert result["status"] == "COMPLETED"
        assert result["completed_steps"] == 4
        assert [(s.id, s.started_at, s.completed_at, s.duration_ms) for s in wf.steps[:2]] == done_before
        assert _events(wf.id).count("STEP_EMAIL") == 1
        assert _events(wf.id).count("APPROVAL_REQUESTED") == 1
        db.session.refresh(invited)
        assert (invited.status, invited.role) == ("ACTIVE", "STAFF")

    def test_resume_requires_paused(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        with pytest.raises(StateTransitionError):
            workflow_executor.resume_workflow(wf.id, tenant.id)

    def test_cancel_skips_pending_steps(self, tenant, admin, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id, triggered_by=admin.id)
        workflow_executor.cancel_workflow(wf.id, tenant.id)
        assert wf.status == "CANCELLED"
        assert wf.error_message == workflow_executor.DEFAULT_CANCEL_REASON
        assert {s.status for s in wf.steps} == {"SKIPPED"}
        assert "WORKFLOW_CANCELLED" in _events(wf.id)
        with pytest.raises(StateTransitionError):
            workflow_executor.cancel_workflow(wf.id, tenant.id)

    def test_due_scheduled_workflows_run(self, tenant, invited):
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        due = workflow_builder.create_workflow_from_template(tenant.id, invited.id, scheduled_for=past)
        later = workflow_builder.create_workflow_from_template(
            tenant.id, invited.id, scheduled_for="2999-01-01",
        )
        results = workflow_executor.execute_due_workflows()
        assert [r["workflow_id"] for r in results] == [due.id]
        assert later.status == "PENDING"

    def test_workflow_of_other_tenant_is_not_found(self, tenant, other_tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        with pytest.raises(NotFoundError):
            workflow_executor.get_workflow(wf.id, other_tenant.id)


# ═════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════

class TestNotifications:
    def test_dispatch_marks_pending_as_sent(self, tenant, admin, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id, triggered_by=admin.id)
        workflow_executor.execute_workflow(wf.id, tenant.id)
        pending = WorkflowNotification.query.filter_by(status="PENDING").count()

        stats = NotificationManager.dispatch_pending()
        assert stats == {"sent": pending, "failed": 0}
        assert WorkflowNotification.query.filter_by(status="PENDING").count() == 0

    def test_invalid_recipient_is_rejected(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        with pytest.raises(ValidationError):
            NotificationManager.queue_email(workflow_id=wf.id, to="not-an-address", subject="x")

    def test_unknown_event_is_rejected(self, tenant, invited):
        wf = workflow_builder.create_workflow_from_template(tenant.id, invited.id)
        with pytest.raises(ValidationError):
            NotificationManager.queue_email(workflow_id=wf.id, to="hr@acme-accounting.com",
                                            subject="x", event="BIRTHDAY")


class TestUndeliverableRecipients:
    @pytest.fixture()
    def legacy(self, tenant, make_user):
        # imported before address validation existed
        return make_user(tenant, "pat at firm", "CLIENT", status="INVITED")

    def test_completion_skips_bad_address(self, tenant, admin, legacy):
        wf = workflow_builder.create_custom_workflow(tenant.id, legacy.id, "ONBOARDING", [
            {"name": "Activate", "action_type": "CREATE_ACCOUNT"},
        ], triggered_by=admin.id)
        result = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert result["status"] == "COMPLETED"
        notes = WorkflowNotification.query.filter_by(event="WORKFLOW_COMPLETED").all()
        assert [n.email_to for n in notes] == ["admin@acme-accounting.com"]

    def test_failure_is_recorded(self, tenant, admin, legacy):
        wf = workflow_builder.create_custom_workflow(tenant.id, legacy.id, "ROLE_CHANGE", [
            {"name": "Role", "action_type": "ASSIGN_ROLE"},
        ], triggered_by=admin.id)
        result = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert result["status"] == "FAILED"
        db.session.expire_all()
        assert workflow_executor.get_workflow(wf.id, tenant.id).status == "FAILED"
        assert _events(wf.id) == ["WORKFLOW_FAILED"]

    def test_cancel_goes_through(self, tenant, legacy):
        wf = workflow_builder.create_workflow_from_template(tenant.id, legacy.id)
        workflow_executor.cancel_workflow(wf.id, tenant.id, reason="duplicate")
        db.session.expire_all()
        assert workflow_executor.get_workflow(wf.id, tenant.id).status == "CANCELLED"
        assert _events(wf.id) == []

    def test_approval_request_skips_bad_approver(self, tenant, staff_user):
        wf = workflow_builder.create_custom_workflow(tenant.id, staff_user.id, "OFFBOARDING", [
            {"name": "Sign-off", "action_type": "REQUEST_APPROVAL", "requires_approval": True,
             "config": {"approvers": ["nobody", "partner@acme-accounting.com"]}},
        ])
        result = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert result["status"] == "PENDING"
        notes = WorkflowNotification.query.filter_by(event="APPROVAL_REQUESTED").all()
        assert [n.email_to for n in notes] == ["partner@acme-accounting.com"]


class TestLastAdmin:
    def test_role_step_cannot_demote_sole_admin(self, tenant, admin):
        wf = workflow_builder.create_custom_workflow(tenant.id, admin.id, "ROLE_CHANGE", [
            {"name": "Role", "action_type": "ASSIGN_ROLE", "config": {"role": "STAFF"}},
        ])
        result = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert result["status"] == "FAILED"
        assert result["error"] == "Cannot remove the last active admin"
        db.session.refresh(admin)
        assert admin.role == "ADMIN"

    def test_disable_step_cannot_lock_out_firm(self, tenant, admin):
        wf = workflow_builder.create_custom_workflow(tenant.id, admin.id, "OFFBOARDING", [
            {"name": "Disable", "action_type": "DISABLE_ACCOUNT"},
        ])
        result = workflow_executor.execute_workflow(wf.id, tenant.id)
        assert result["status"] == "FAILED"
        assert result["error"] == "Cannot remove the last active admin"
        db.session.refresh(admin)
        assert admin.status == "ACTIVE"

    def test_archive_step_cannot_remove_sole_admin(self, tenant, admin):
        wf = workflow_builder.create_custom_workflow(tenant.id, admin.id, "OFFBOARDING", [
            {"name": "Archive", "action_type": "ARCHIVE_DATA"},
        ])
        assert workflow_executor.execute_workflow(wf.id, tenant.id)["status"] == "FAILED"
        db.session.refresh(admin)
        assert admin.status == "ACTIVE"

    def test_demotion_allowed_while_another_admin_remains(self, tenant, admin, super_admin):
        wf = workflow_builder.create_custom_workflow(tenant.id, admin.id, "ROLE_CHANGE", [
            {"name": "Role", "action_type": "ASSIGN_ROLE", "config": {"role": "TEAM_LEAD"}},
            {"name": "Disable", "action_type": "DISABLE_ACCOUNT"},
        ])
        assert workflow_executor.execute_workflow(wf.id, tenant.id)["status"] == "COMPLETED"
        db.session.refresh(admin)
        assert (admin.role, admin.status) == ("TEAM_LEAD", "INACTIVE")

    def test_staff_demotion_unaffected(self, tenant, staff_user):
        wf = workflow_builder.create_custom_workflow(tenant.id, staff_user.id, "ROLE_CHANGE", [
            {"name": "Role", "action_type": "ASSIGN_ROLE", "config": {"role": "CLIENT"}},
        ])
        assert workflow_executor.execute_workflow(wf.id, tenant.id)["status"] == "COMPLETED"
