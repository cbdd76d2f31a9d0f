from rest_framework import status
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.exceptions import domain_error_envelope, error_response
from common.pagination import paginated_envelope
from common.permissions import RoleCapabilityPermission, caller_context_for
from common.responses import success_response
from common.utils import parse_bool_param, parse_date_param, parse_uuid_param
from dues import payments
from dues.ledger import get_ledger
from dues.serializers import (
    DueCreateSerializer,
    DuePaymentBulkSerializer,
    DuePaymentCreateSerializer,
    DuePaymentDeleteSerializer,
    DuePaymentSerializer,
    DuePaymentUpdateSerializer,
    DueSerializer,
    DueSummarySerializer,
    PaymentSummarySerializer,
)


def _due_entity(ledger):
    return f"{ledger.due_type}_due"


class DueTypeMixin:
    """Resolves the ledger named by the ``due_type`` URL segment."""

    def ledger_for(self, due_type):
        return get_ledger(due_type)


class DueListCreateView(DueTypeMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view", "post": "dues.manage"}

    def get(self, request, due_type):
        ledger = self.ledger_for(due_type)
        caller = caller_context_for(request.user)
        params = request.query_params
        queryset = ledger.list(
            counterparty_id=parse_uuid_param(params, "counterparty_id"),
            branch_id=caller.scope_branch_id(parse_uuid_param(params, "branch_id")),
            status=params.get("status") or None,
            overdue=parse_bool_param(params, "overdue"),
        )
        return paginated_envelope(request, queryset, DueSerializer, message="Dues retrieved.", view=self)

    def post(self, request, due_type):
        ledger = self.ledger_for(due_type)
        caller = caller_context_for(request.user)
        serializer = DueCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        branch_id = data.get("branch_id") or caller.branch_id
        if not caller.can_access_branch(branch_id):
            raise PermissionDenied("You can only create dues for your own branch.")

        due = ledger.create(
            counterparty_id=data["counterparty_id"],
            branch_id=branch_id,
            stock_movement_id=data["stock_movement_id"],
            due_date=data["due_date"],
            total_amount=data["total_amount"],
            paid_amount=data.get("paid_amount"),
            due_type=data.get("due_type"),
            description=data.get("description"),
        )
        due = ledger.get(due.id)
        payload = DueSerializer(due).data
        create_audit_log_from_request(
            request,
            action="due.create",
            entity=_due_entity(ledger),
            entity_id=due.id,
            after_snapshot=payload,
            branch_id=due.branch_id,
        )
        return success_response(message="Due created.", data=payload, status_code=status.HTTP_201_CREATED)


class DueSummaryView(DueTypeMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view"}

    def get(self, request, due_type):
        ledger = self.ledger_for(due_type)
        caller = caller_context_for(request.user)
        summary = ledger.summary(branch_id=caller.scope_branch_id(parse_uuid_param(request.query_params, "branch_id")))
        return success_response(message="Due summary retrieved.", data=DueSummarySerializer(summary).data)


class DueOverdueView(DueTypeMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view"}

    def get(self, request, due_type):
        ledger = self.ledger_for(due_type)
        caller = caller_context_for(request.user)
        queryset = ledger.overdue(branch_id=caller.scope_branch_id(parse_uuid_param(request.query_params, "branch_id")))
        return paginated_envelope(request, queryset, DueSerializer, message="Overdue dues retrieved.", view=self)


class DueByStockMovementView(DueTypeMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view"}

    def get(self, request, due_type, movement_id):
        ledger = self.ledger_for(due_type)
        caller = caller_context_for(request.user)
        due = ledger.get_by_stock_movement(movement_id)
        if due is None or not caller.can_access_branch(*ledger.branch_ids_for(due)):
            return success_response(message="No due found for this stock movement.", data=None)
        return success_response(message="Due retrieved.", data=DueSerializer(due).data)


class DueDetailView(DueTypeMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view", "delete": "dues.manage"}

    def get(self, request, due_type, due_id):
        ledger = self.ledger_for(due_type)
        due = ledger.get(due_id, caller=caller_context_for(request.user))
        return success_response(message="Due retrieved.", data=DueSerializer(due).data)

    def delete(self, request, due_type, due_id):
        ledger = self.ledger_for(due_type)
        due = ledger.get(due_id, caller=caller_context_for(request.user))
        before_snapshot = DueSerializer(due).data
        deleted_payments = ledger.delete(due.id)
        create_audit_log_from_request(
            request,
            action="due.delete",
            entity=_due_entity(ledger),
            entity_id=due.id,
            before_snapshot=before_snapshot,
            branch_id=due.branch_id,
        )
        return success_response(message="Due deleted.", data={"id": str(due.id), "deleted_payments": deleted_payments})


class DueCancelView(DueTypeMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "dues.manage"}

    def post(self, request, due_type, due_id):
        ledger = self.ledger_for(due_type)
        due = ledger.get(due_id, caller=caller_context_for(request.user))
        before_snapshot = DueSerializer(due).data
        ledger.cancel(due.id)
        due = ledger.get(due.id)
        payload = DueSerializer(due).data
        create_audit_log_from_request(
            request,
            action="due.cancel",
            entity=_due_entity(ledger),
            entity_id=due.id,
            before_snapshot=before_snapshot,
            after_snapshot=payload,
            branch_id=due.branch_id,
        )
        return success_response(message="Due cancelled.", data=payload)


def _payment_payload(payment, due):
    return {
        "payment": DuePaymentSerializer(payment).data,
        "due": DueSerializer(get_ledger(payment.due_type).get(due.pk)).data,
    }


class DuePaymentListCreateView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view", "post": "dues.payment.create"}

    def get(self, request):
        caller = caller_context_for(request.user)
        params = request.query_params
        queryset = payments.list_payments(
            branch_id=caller.scope_branch_id(parse_uuid_param(params, "branch_id")),
            user_id=parse_uuid_param(params, "user_id"),
            due_type=params.get("due_type") or None,
            due_id=parse_uuid_param(params, "due_id"),
            date_from=parse_date_param(params, "date_from"),
            date_to=parse_date_param(params, "date_to"),
        )
        return paginated_envelope(request, queryset, DuePaymentSerializer, message="Payments retrieved.", view=self)

    def post(self, request):
        caller = caller_context_for(request.user)
        serializer = DuePaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        payment, due = payments.add_payment(
            **serializer.validated_data,
            user_id=request.user.id,
            branch_id=caller.branch_id,
            caller=caller,
        )
        payload = _payment_payload(payment, due)
        create_audit_log_from_request(
            request,
            action="due_payment.create",
            entity="due_payment",
            entity_id=payment.id,
            after_snapshot=payload["payment"],
            branch_id=payment.branch_id,
        )
        return success_response(message="Payment recorded.", data=payload, status_code=status.HTTP_201_CREATED)


class DuePaymentBulkView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "dues.payment.create"}

    def post(self, request):
        caller = caller_context_for(request.user)
        serializer = DuePaymentBulkSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        results = payments.add_payments_bulk(
            serializer.validated_data["payments"],
            user_id=request.user.id,
            branch_id=caller.branch_id,
            caller=caller,
        )

        rows = []
        succeeded = 0
        for index, payment, error in results:
            if error is not None:
                rows.append({"index": index, **domain_error_envelope(error)})
                continue
            succeeded += 1
            payment_data = DuePaymentSerializer(payment).data
            create_audit_log_from_request(
                request,
                action="due_payment.create",
                entity="due_payment",
                entity_id=payment.id,
                after_snapshot=payment_data,
                branch_id=payment.branch_id,
            )
            rows.append({"index": index, "success": True, "data": payment_data})

        meta = {"total": len(results), "succeeded": succeeded, "failed": len(results) - succeeded}
        if succeeded == 0:
            return error_response(
                code="bulk_payment_failed",
                message="No payments were recorded.",
                errors=rows,
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        if succeeded < len(results):
            return success_response(
                message="Some payments could not be recorded.",
                data=rows,
                meta=meta,
                status_code=status.HTTP_207_MULTI_STATUS,
            )
        return success_response(message="Payments recorded.", data=rows, meta=meta, status_code=status.HTTP_201_CREATED)


class DuePaymentSummaryView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view"}

    def get(self, request):
        caller = caller_context_for(request.user)
        params = request.query_params
        summary = payments.payments_summary(
            branch_id=caller.scope_branch_id(parse_uuid_param(params, "branch_id")),
            date_from=parse_date_param(params, "date_from"),
            date_to=parse_date_param(params, "date_to"),
        )
        return success_response(message="Payment summary retrieved.", data=PaymentSummarySerializer(summary).data)


class DuePaymentDetailView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "dues.view", "patch": "dues.payment.manage", "delete": "dues.payment.manage"}

    def get(self, request, payment_id):
        payment = payments.get_payment(payment_id, caller=caller_context_for(request.user))
        return success_response(message="Payment retrieved.", data=DuePaymentSerializer(payment).data)

    def patch(self, request, payment_id):
        caller = caller_context_for(request.user)
        serializer = DuePaymentUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = DuePaymentSerializer(payments.get_payment(payment_id, caller=caller)).data
        payment, due = payments.update_payment(payment_id, caller=caller, **serializer.validated_data)
        payload = _payment_payload(payment, due)
        create_audit_log_from_request(
            request,
            action="due_payment.update",
            entity="due_payment",
            entity_id=payment.id,
            before_snapshot=before_snapshot,
            after_snapshot=payload["payment"],
            branch_id=payment.branch_id,
        )
        return success_response(message="Payment updated.", data=payload)

    def delete(self, request, payment_id):
        caller = caller_context_for(request.user)
        serializer = DuePaymentDeleteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        if not request.user.check_password(serializer.validated_data["admin_password"]):
            raise PermissionDenied("Admin password confirmation failed.")

        payment = payments.get_payment(payment_id, caller=caller)
        before_snapshot = DuePaymentSerializer(payment).data
        due = payments.delete_payment(payment.id, caller=caller)
        create_audit_log_from_request(
            request,
            action="due_payment.delete",
            entity="due_payment",
            entity_id=payment.id,
            before_snapshot=before_snapshot,
            branch_id=payment.branch_id,
        )
        ledger = get_ledger(payment.due_type)
        return success_response(message="Payment deleted.", data={"due": DueSerializer(ledger.get(due.pk)).data})

