import json

from django.core.serializers.json import DjangoJSONEncoder

from common.logging import current_request_id
from core.models import AuditLog

# Mutations recorded in the audit trail.
AUDITED_ACTIONS = frozenset(
    {
        "due.create",
        "due.cancel",
        "due.delete",
        "due_payment.create",
        "due_payment.update",
        "due_payment.delete",
        "stock_movement.create",
        "stock_movement.update",
        "stock_movement.cancel",
    }
)


def _json_safe(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID") or current_request_id()


def create_audit_log(
    *,
    actor=None,
    branch_id=None,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
):
    if action not in AUDITED_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    return AuditLog.objects.create(
        actor=actor,
        branch_id=branch_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=_json_safe(before_snapshot),
        after_snapshot=_json_safe(after_snapshot),
        request_id=request_id or current_request_id(),
    )


def create_audit_log_from_request(
    request,
    *,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    branch_id=None,
):
    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user is not None and user.is_authenticated else None,
        branch_id=branch_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        request_id=get_request_id(request),
    )
