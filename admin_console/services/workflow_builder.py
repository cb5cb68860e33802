"""
Workflow Builder — instantiates lifecycle workflows from templates.

Built-in templates (one default per workflow type):
    onboarding-standard   — account, access, role, welcome email
    offboarding-standard  — manager sign-off, disable, permission reset, archive
    role-change-standard  — manager sign-off, new role, permission sync, notice

A workflow is created in DRAFT (PENDING when scheduled for later) with
one PENDING step per template entry, numbered from 1.
"""

import copy
import logging

from admin_console.core.exceptions import NotFoundError, ValidationError
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.auth import User
from admin_console.models.workflow import ACTION_TYPES, WORKFLOW_TYPES, UserWorkflow, WorkflowStep
from admin_console.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)


def _step(name, action_type, *, requires_approval=False, description=None, config=None):
    return {
        "name": name,
        "action_type": action_type,
        "requires_approval": requires_approval,
        "description": description,
        "config": config or {},
    }


WORKFLOW_TEMPLATES = {
    "onboarding-standard": {
        "name": "Standard onboarding",
        "workflow_type": "ONBOARDING",
        "steps": [
            _step("Create account", "CREATE_ACCOUNT",
                  description="Activate the invited account."),
            _step("Provision access", "PROVISION_ACCESS",
                  description="Grant baseline permissions.",
                  config={"permissions": ["dashboard.view"]}),
            _step("Assign role", "ASSIGN_ROLE",
                  description="Give the user their working role.",
                  config={"role": "TEAM_MEMBER"}),
            _step("Send welcome email", "SEND_EMAIL",
                  config={"subject": "Welcome to the firm",
                          "body": "Your account is ready. Sign in to get started."}),
        ],
    },
    "offboarding-standard": {
        "name": "Standard offboarding",
        "workflow_type": "OFFBOARDING",
        "steps": [
            _step("Manager sign-off", "REQUEST_APPROVAL", requires_approval=True,
                  description="A firm admin confirms the departure."),
            _step("Disable account", "DISABLE_ACCOUNT"),
            _step("Revoke extra permissions", "SYNC_PERMISSIONS"),
            _step("Archive data", "ARCHIVE_DATA"),
        ],
    },
    "role-change-standard": {
        "name": "Standard role change",
        "workflow_type": "ROLE_CHANGE",
        "steps": [
            _step("Manager sign-off", "REQUEST_APPROVAL", requires_approval=True),
            _step("Assign new role", "ASSIGN_ROLE", config={"role": "TEAM_LEAD"}),
            _step("Sync permissions", "SYNC_PERMISSIONS"),
            _step("Notify user", "SEND_EMAIL",
                  config={"subject": "Your role has changed",
                          "body": "Your permissions were updated to match your new role."}),
        ],
    },
}

DEFAULT_TEMPLATE_FOR_TYPE = {
    "ONBOARDING": "onboarding-standard",
    "OFFBOARDING": "offboarding-standard",
    "ROLE_CHANGE": "role-change-standard",
}


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════

def list_templates():
    return [
        {"key": key, "name": t["name"], "workflow_type": t["workflow_type"],
         "steps": copy.deepcopy(t["steps"])}
        for key, t in WORKFLOW_TEMPLATES.items()
    ]


def get_template(key):
    template = WORKFLOW_TEMPLATES.get(key)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=key)
    return template


def _validate_steps(steps):
    if not steps:
        raise ValidationError("A workflow needs at least one step")
    for idx, step_def in enumerate(steps, start=1):
        if not isinstance(step_def, dict) or not step_def.get("name"):
            raise ValidationError(f"Step {idx} needs a name", details={"step": idx})
        if step_def.get("action_type") not in ACTION_TYPES:
            raise ValidationError(
                f"Step {idx} has invalid action_type {step_def.get('action_type')!r}",
                details={"step": idx, "valid_action_types": list(ACTION_TYPES)},
            )
        if step_def.get("config") is not None and not isinstance(step_def["config"], dict):
            raise ValidationError(f"Step {idx} config must be an object", details={"step": idx})


# ═════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════

def _create_workflow(tenant_id, user_id, workflow_type, steps, *,
                     template_key=None, scheduled_for=None, triggered_by=None):
    if workflow_type not in WORKFLOW_TYPES:
        raise ValidationError(
            f"Invalid workflow type {workflow_type!r}",
            details={"valid_types": list(WORKFLOW_TYPES)},
        )
    user = User.get_for_tenant(user_id, tenant_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id, tenant_id=tenant_id)
    _validate_steps(steps)

    scheduled_at = None
    if scheduled_for:
        scheduled_at = parse_datetime(scheduled_for)
        if scheduled_at is None:
            raise ValidationError("scheduledFor must be an ISO-8601 date or datetime")

    workflow = UserWorkflow(
        tenant_id=tenant_id,
        user_id=user.id,
        workflow_type=workflow_type,
        status="PENDING" if scheduled_at else "DRAFT",
        template_key=template_key,
        triggered_by=triggered_by,
        scheduled_for=scheduled_at,
        total_steps=len(steps),
    )
    db.session.add(workflow)
    db.session.flush()

    for number, step_def in enumerate(steps, start=1):
        db.session.add(WorkflowStep(
            workflow_id=workflow.id,
            step_number=number,
            name=step_def["name"],
            description=step_def.get("description"),
            action_type=step_def["action_type"],
            requires_approval=bool(step_def.get("requires_approval")),
            config=copy.deepcopy(step_def.get("config") or {}),
            status="PENDING",
        ))

    write_audit(
        action="workflow.create",
        resource="user_workflow",
        resource_id=workflow.id,
        tenant_id=tenant_id,
        user_id=triggered_by,
        details={"workflow_type": workflow_type, "user_id": user.id,
                 "template": template_key, "steps": len(steps)},
    )
    db.session.commit()
    logger.info("Workflow %d created (%s, %d steps) for user %d",
                workflow.id, workflow_type, len(steps), user.id,
                extra={"tenant_id": tenant_id, "workflow_id": workflow.id})
    return workflow


def create_workflow_from_template(tenant_id, user_id, *, template_id=None, workflow_type=None,
                                  scheduled_for=None, triggered_by=None, overrides=None):
    """
    Create a workflow for *user_id* from a template.

    Resolution: explicit ``template_id``; else the default template for
    ``workflow_type`` (ONBOARDING when omitted). ``overrides`` maps a step
    number to config keys merged over the template config.
    """
    if template_id:
        template = get_template(template_id)
        if workflow_type and workflow_type != template["workflow_type"]:
            raise ValidationError(
                f"Template {template_id} is a {template['workflow_type']} template",
                details={"templateId": template_id, "type": workflow_type},
            )
        key = template_id
    else:
        workflow_type = workflow_type or "ONBOARDING"
        key = DEFAULT_TEMPLATE_FOR_TYPE.get(workflow_type)
        if key is None:
            raise ValidationError(
                f"Invalid workflow type {workflow_type!r}",
                details={"valid_types": list(WORKFLOW_TYPES)},
            )
        template = WORKFLOW_TEMPLATES[key]

    steps = copy.deepcopy(template["steps"])
    for number, extra in (overrides or {}).items():
        idx = int(number) - 1
        if not 0 <= idx < len(steps) or not isinstance(extra, dict):
            raise ValidationError(f"Invalid override for step {number}")
        steps[idx]["config"].update(extra)

    return _create_workflow(
        tenant_id, user_id, template["workflow_type"], steps,
        template_key=key, scheduled_for=scheduled_for, triggered_by=triggered_by,
    )


def create_custom_workflow(tenant_id, user_id, workflow_type, steps, *,
                           scheduled_for=None, triggered_by=None):
    """Create a workflow from a caller-supplied step list."""
    return _create_workflow(
        tenant_id, user_id, workflow_type, steps or [],
        template_key=None, scheduled_for=scheduled_for, triggered_by=triggered_by,
    )
