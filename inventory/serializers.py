from rest_framework import serializers

from inventory.models import ProductStock, StockMovement


class StockMovementSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True)
    reference_branch_name = serializers.CharField(source="reference_branch.name", read_only=True, default=None)
    supplier_name = serializers.CharField(source="supplier.name", read_only=True, default=None)
    user_username = serializers.CharField(source="user.username", read_only=True, default=None)

    class Meta:
        model = StockMovement
        fields = [
            "id",
            "movement_type",
            "product",
            "product_name",
            "product_sku",
            "branch",
            "branch_name",
            "reference_branch",
            "reference_branch_name",
            "supplier",
            "supplier_name",
            "user",
            "user_username",
            "quantity",
            "unit_price_per_meter",
            "total_amount",
            "paid_amount",
            "remaining_amount",
            "quantity_before",
            "date",
            "notes",
            "auto_update_product",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class StockMovementCreateSerializer(serializers.Serializer):
    movement_type = serializers.ChoiceField(choices=StockMovement.MovementType.choices)
    product_id = serializers.UUIDField()
    branch_id = serializers.UUIDField(required=False)
    reference_branch_id = serializers.UUIDField(required=False, allow_null=True)
    supplier_id = serializers.UUIDField(required=False, allow_null=True)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    unit_price_per_meter = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)
    date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    auto_update_product = serializers.BooleanField(required=False, default=True)

    def validate(self, attrs):
        if attrs["movement_type"] in StockMovement.TRANSFER_TYPES and not attrs.get("reference_branch_id"):
            raise serializers.ValidationError({"reference_branch_id": "Required for transfer movements."})
        return attrs


class StockMovementUpdateSerializer(serializers.Serializer):
    movement_type = serializers.ChoiceField(choices=StockMovement.MovementType.choices, required=False)
    product_id = serializers.UUIDField(required=False)
    branch_id = serializers.UUIDField(required=False)
    reference_branch_id = serializers.UUIDField(required=False, allow_null=True)
    supplier_id = serializers.UUIDField(required=False, allow_null=True)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    unit_price_per_meter = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide at least one field to update.")
        return attrs


class MovementSummaryRowSerializer(serializers.Serializer):
    movement_type = serializers.CharField()
    count = serializers.IntegerField()
    total_quantity = serializers.DecimalField(max_digits=14, decimal_places=2)
    average_price = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)


class ProductStockSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True)

    class Meta:
        model = ProductStock
        fields = ["id", "product", "product_name", "product_sku", "branch", "branch_name", "quantity", "updated_at"]
        read_only_fields = fields
