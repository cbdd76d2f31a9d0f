from django.utils import timezone
from rest_framework import serializers

from dues.amounts import effective_status
from dues.models import Due, DuePayment


class DueSerializer(serializers.Serializer):
    """Read shape shared by supplier, branch and customer dues."""

    id = serializers.UUIDField(read_only=True)
    counterparty_id = serializers.UUIDField(read_only=True)
    counterparty_name = serializers.SerializerMethodField()
    branch_id = serializers.UUIDField(read_only=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True)
    stock_movement_id = serializers.UUIDField(read_only=True)
    movement_type = serializers.CharField(source="stock_movement.movement_type", read_only=True, default=None)
    movement_date = serializers.DateField(source="stock_movement.date", read_only=True, default=None)
    due_date = serializers.DateField(read_only=True)
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    remaining_amount = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    status = serializers.SerializerMethodField()
    stored_status = serializers.CharField(source="status", read_only=True)
    is_overdue = serializers.SerializerMethodField()
    due_type = serializers.CharField(read_only=True)
    description = serializers.CharField(read_only=True)
    version = serializers.IntegerField(read_only=True)
    created_at = serializers.DateTimeField(read_only=True)
    updated_at = serializers.DateTimeField(read_only=True)

    def _today(self):
        if "today" not in self.context:
            self.context["today"] = timezone.localdate()
        return self.context["today"]

    def get_counterparty_name(self, obj):
        counterparty = obj.counterparty
        return getattr(counterparty, "name", None)

    def get_status(self, obj):
        return effective_status(obj, self._today())

    def get_is_overdue(self, obj):
        return effective_status(obj, self._today()) == Due.Status.OVERDUE


class DueCreateSerializer(serializers.Serializer):
    counterparty_id = serializers.UUIDField()
    branch_id = serializers.UUIDField(required=False)
    stock_movement_id = serializers.UUIDField()
    due_date = serializers.DateField()
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)
    due_type = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    description = serializers.CharField(required=False, allow_blank=True, default="")


class AmountBucketSerializer(serializers.Serializer):
    count = serializers.IntegerField()
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    paid_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    remaining_amount = serializers.DecimalField(max_digits=14, decimal_places=2)


class DueSummarySerializer(serializers.Serializer):
    due_type = serializers.CharField()
    by_status = serializers.DictField(child=AmountBucketSerializer())
    totals = AmountBucketSerializer()


class DuePaymentSerializer(serializers.ModelSerializer):
    user_username = serializers.CharField(source="user.username", read_only=True, default=None)
    branch_name = serializers.CharField(source="branch.name", read_only=True)

    class Meta:
        model = DuePayment
        fields = [
            "id",
            "due_type",
            "due_id",
            "amount",
            "payment_date",
            "payment_method",
            "user",
            "user_username",
            "branch",
            "branch_name",
            "description",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class DuePaymentCreateSerializer(serializers.Serializer):
    due_type = serializers.ChoiceField(choices=DuePayment.DueType.choices)
    due_id = serializers.UUIDField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_date = serializers.DateField()
    payment_method = serializers.ChoiceField(choices=DuePayment.Method.choices, default=DuePayment.Method.CASH)
    description = serializers.CharField(required=False, allow_blank=True, default="")


class DuePaymentUpdateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    payment_date = serializers.DateField(required=False)
    payment_method = serializers.ChoiceField(choices=DuePayment.Method.choices, required=False)
    description = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide at least one field to update.")
        return attrs


class DuePaymentDeleteSerializer(serializers.Serializer):
    admin_password = serializers.CharField(write_only=True, trim_whitespace=False)


class DuePaymentBulkSerializer(serializers.Serializer):
    payments = serializers.ListField(child=serializers.DictField(), allow_empty=False, max_length=100)


class PaymentGroupSerializer(serializers.Serializer):
    due_type = serializers.CharField()
    payment_method = serializers.CharField()
    payment_count = serializers.IntegerField()
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    due_count = serializers.IntegerField()
    user_count = serializers.IntegerField()


class PaymentTotalsSerializer(serializers.Serializer):
    payment_count = serializers.IntegerField()
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)


class PaymentSummarySerializer(serializers.Serializer):
    groups = PaymentGroupSerializer(many=True)
    totals = PaymentTotalsSerializer()
