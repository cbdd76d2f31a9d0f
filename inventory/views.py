from rest_framework import status
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.pagination import paginated_envelope
from common.permissions import RoleCapabilityPermission, caller_context_for
from common.responses import success_response
from common.utils import parse_bool_param, parse_date_param, parse_uuid_param
from dues.serializers import DueSerializer
from inventory import movements
from inventory.serializers import (
    MovementSummaryRowSerializer,
    ProductStockSerializer,
    StockMovementCreateSerializer,
    StockMovementSerializer,
    StockMovementUpdateSerializer,
)


class StockMovementListCreateView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.movement.view", "post": "stock.movement.manage"}

    def get(self, request):
        caller = caller_context_for(request.user)
        params = request.query_params
        queryset = movements.list_movements(
            branch_id=caller.scope_branch_id(parse_uuid_param(params, "branch_id")),
            product_id=parse_uuid_param(params, "product_id"),
            movement_type=params.get("movement_type") or None,
            reference_branch_id=parse_uuid_param(params, "reference_branch_id"),
            date_from=parse_date_param(params, "date_from"),
            date_to=parse_date_param(params, "date_to"),
            include_cancelled=parse_bool_param(params, "include_cancelled"),
        )
        return paginated_envelope(request, queryset, StockMovementSerializer, message="Stock movements retrieved.", view=self)

    def post(self, request):
        caller = caller_context_for(request.user)
        serializer = StockMovementCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)

        data["branch_id"] = data.get("branch_id") or caller.branch_id
        if not caller.can_access_branch(data["branch_id"]):
            raise PermissionDenied("You can only record movements for your own branch.")

        movement, due = movements.record_movement(data, user_id=request.user.id)
        movement = movements.get_movement(movement.id)
        payload = StockMovementSerializer(movement).data
        create_audit_log_from_request(
            request,
            action="stock_movement.create",
            entity="stock_movement",
            entity_id=movement.id,
            after_snapshot=payload,
            branch_id=movement.branch_id,
        )
        return success_response(
            message="Stock movement recorded.",
            data={"movement": payload, "due": DueSerializer(due).data if due else None},
            status_code=status.HTTP_201_CREATED,
        )


class StockMovementSummaryView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.movement.view"}

    def get(self, request):
        caller = caller_context_for(request.user)
        params = request.query_params
        rows = movements.movement_summary(
            branch_id=caller.scope_branch_id(parse_uuid_param(params, "branch_id")),
            date_from=parse_date_param(params, "date_from"),
            date_to=parse_date_param(params, "date_to"),
        )
        return success_response(
            message="Stock movement summary retrieved.",
            data=MovementSummaryRowSerializer(rows, many=True).data,
        )


class StockLevelView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.movement.view"}

    def get(self, request):
        caller = caller_context_for(request.user)
        params = request.query_params
        queryset = movements.stock_levels(
            branch_id=caller.scope_branch_id(parse_uuid_param(params, "branch_id")),
            product_id=parse_uuid_param(params, "product_id"),
        )
        return paginated_envelope(request, queryset, ProductStockSerializer, message="Stock levels retrieved.", view=self)


class StockMovementDetailView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "get": "stock.movement.view",
        "patch": "stock.movement.manage",
        "delete": "stock.movement.manage",
    }

    def get(self, request, movement_id):
        movement = movements.get_movement(movement_id, caller=caller_context_for(request.user))
        return success_response(message="Stock movement retrieved.", data=StockMovementSerializer(movement).data)

    def patch(self, request, movement_id):
        caller = caller_context_for(request.user)
        serializer = StockMovementUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = StockMovementSerializer(movements.get_movement(movement_id, caller=caller)).data
        movement, dues = movements.update_movement(movement_id, dict(serializer.validated_data), caller=caller)
        movement = movements.get_movement(movement.id)
        payload = StockMovementSerializer(movement).data
        create_audit_log_from_request(
            request,
            action="stock_movement.update",
            entity="stock_movement",
            entity_id=movement.id,
            before_snapshot=before_snapshot,
            after_snapshot=payload,
            branch_id=movement.branch_id,
        )
        return success_response(
            message="Stock movement updated.",
            data={"movement": payload, "dues": DueSerializer(dues, many=True).data},
        )

    def delete(self, request, movement_id):
        caller = caller_context_for(request.user)
        before_snapshot = StockMovementSerializer(movements.get_movement(movement_id, caller=caller)).data
        movement, effects = movements.cancel_movement(movement_id, caller=caller)
        movement = movements.get_movement(movement.id)
        payload = StockMovementSerializer(movement).data
        create_audit_log_from_request(
            request,
            action="stock_movement.cancel",
            entity="stock_movement",
            entity_id=movement.id,
            before_snapshot=before_snapshot,
            after_snapshot={**payload, "due_effects": effects},
            branch_id=movement.branch_id,
        )
        return success_response(message="Stock movement cancelled.", data={"movement": payload, "due_effects": effects})
