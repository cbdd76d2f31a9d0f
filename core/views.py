import logging

from django.db import DatabaseError, connections
from rest_framework import status, viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.pagination import paginated_envelope
from common.permissions import RoleCapabilityPermission, caller_context_for
from common.responses import success_response
from common.utils import parse_date_param, parse_uuid_param
from core.models import AuditLog
from core.serializers import AuditLogSerializer, EmailOrUsernameTokenObtainPairSerializer

logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor", "branch")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "dues.manage", "retrieve": "dues.manage"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        caller = caller_context_for(self.request.user)
        params = self.request.query_params

        branch_id = caller.scope_branch_id(parse_uuid_param(params, "branch_id"))
        if branch_id:
            qs = qs.filter(branch_id=branch_id)

        start_date = parse_date_param(params, "start_date")
        end_date = parse_date_param(params, "end_date")
        actor_id = parse_uuid_param(params, "actor_id")
        entity_id = parse_uuid_param(params, "entity_id")
        action = params.get("action")
        entity = params.get("entity")

        if start_date:
            qs = qs.filter(created_at__date__gte=start_date)
        if end_date:
            qs = qs.filter(created_at__date__lte=end_date)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)
        if action:
            qs = qs.filter(action=action)
        if entity:
            qs = qs.filter(entity=entity)
        return qs

    def list(self, request, *args, **kwargs):
        return paginated_envelope(request, self.get_queryset(), self.get_serializer_class(), message="Audit logs retrieved.", view=self)

    def retrieve(self, request, *args, **kwargs):
        return success_response(message="Audit log retrieved.", data=self.get_serializer(self.get_object()).data)


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
