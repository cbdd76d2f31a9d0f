import uuid

from django.conf import settings
from django.db import models

from core.models import Branch


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    unit = models.CharField(max_length=32, default="meter")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["is_active"], name="product_active_idx")]

    def __str__(self):
        return self.name


class ProductStock(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_levels")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="stock_levels")
    quantity = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["product", "branch"], name="uniq_product_stock_branch"),
        ]
        indexes = [models.Index(fields=["branch", "product"], name="stock_branch_product_idx")]


class Supplier(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, null=True, blank=True)
    name = models.CharField(max_length=255)
    code = models.CharField(max_length=64, unique=True)
    phone = models.CharField(max_length=64, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["branch", "is_active"], name="supplier_branch_active_idx")]

    def __str__(self):
        return self.name


class StockMovement(models.Model):
    class MovementType(models.TextChoices):
        ARRIVAL = "arrival", "Arrival"
        DISPATCH = "dispatch", "Dispatch"
        TRANSFER_IN = "transfer_in", "Transfer in"
        TRANSFER_OUT = "transfer_out", "Transfer out"
        ADJUSTMENT = "adjustment", "Adjustment"

    class Status(models.TextChoices):
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    TRANSFER_TYPES = (MovementType.TRANSFER_IN, MovementType.TRANSFER_OUT)
    OUTGOING_TYPES = (MovementType.DISPATCH, MovementType.TRANSFER_OUT)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    movement_type = models.CharField(max_length=16, choices=MovementType.choices)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="movements")
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="stock_movements")
    reference_branch = models.ForeignKey(
        Branch,
        on_delete=models.PROTECT,
        related_name="referenced_stock_movements",
        null=True,
        blank=True,
    )
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, null=True, blank=True, related_name="stock_movements")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    quantity = models.DecimalField(max_digits=12, decimal_places=2)
    unit_price_per_meter = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    remaining_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    quantity_before = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    date = models.DateField()
    notes = models.TextField(blank=True, default="")
    auto_update_product = models.BooleanField(default=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.COMPLETED)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "date"], name="movement_branch_date_idx"),
            models.Index(fields=["product", "date"], name="movement_product_date_idx"),
            models.Index(fields=["movement_type", "status"], name="movement_type_status_idx"),
            models.Index(fields=["reference_branch"], name="movement_ref_branch_idx"),
        ]

    @property
    def is_transfer(self):
        return self.movement_type in self.TRANSFER_TYPES

    @property
    def stock_applied(self):
        return self.auto_update_product and self.status == self.Status.COMPLETED
