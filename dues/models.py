import uuid

from django.conf import settings
from django.db import models
from django.db.models import Q

from core.models import Branch
from inventory.models import StockMovement, Supplier
from sales.models import Customer


class Due(models.Model):
    """Money owed to or by a counterparty, opened by one stock movement.

    ``remaining_amount`` always equals ``total_amount - paid_amount``. The stored
    status is one of pending/partial/paid/cancelled; ``overdue`` is derived from
    ``due_date`` when the row is read and is never written.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PARTIAL = "partial", "Partial"
        PAID = "paid", "Paid"
        OVERDUE = "overdue", "Overdue"
        CANCELLED = "cancelled", "Cancelled"

    OPEN_STATUSES = (Status.PENDING, Status.PARTIAL)

    counterparty_field = None

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="%(class)ss")
    stock_movement = models.ForeignKey(
        StockMovement,
        on_delete=models.PROTECT,
        related_name="%(class)ss",
    )
    due_date = models.DateField()
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    remaining_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    due_type = models.CharField(max_length=64, blank=True, default="")
    description = models.TextField(blank=True, default="")
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["due_date", "-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["stock_movement"],
                condition=~Q(status="cancelled"),
                name="%(app_label)s_%(class)s_one_open_per_movement",
            ),
            models.CheckConstraint(
                condition=Q(total_amount__gt=0),
                name="%(app_label)s_%(class)s_total_positive",
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__gte=0) & Q(paid_amount__lte=models.F("total_amount")),
                name="%(app_label)s_%(class)s_paid_in_range",
            ),
        ]
        indexes = [
            models.Index(fields=["branch", "status"], name="%(class)s_br_status_idx"),
            models.Index(fields=["due_date"], name="%(class)s_due_date_idx"),
        ]

    @property
    def counterparty_id(self):
        return getattr(self, f"{self.counterparty_field}_id")

    @property
    def counterparty(self):
        return getattr(self, self.counterparty_field)


class SupplierDue(Due):
    counterparty_field = "supplier"

    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name="dues")

    class Meta(Due.Meta):
        pass


class BranchDue(Due):
    counterparty_field = "counterparty_branch"

    counterparty_branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="counterparty_dues")

    class Meta(Due.Meta):
        pass


class CustomerDue(Due):
    counterparty_field = "customer"

    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="dues")

    class Meta(Due.Meta):
        pass


class DuePayment(models.Model):
    class DueType(models.TextChoices):
        SUPPLIER = "supplier", "Supplier"
        CUSTOMER = "customer", "Customer"
        BRANCH = "branch", "Branch"

    class Method(models.TextChoices):
        CASH = "cash", "Cash"
        BANK_TRANSFER = "bank_transfer", "Bank transfer"
        CHEQUE = "cheque", "Cheque"
        CARD = "card", "Card"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    due_type = models.CharField(max_length=16, choices=DueType.choices)
    # Points into the due table selected by due_type.
    due_id = models.UUIDField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_date = models.DateField()
    payment_method = models.CharField(max_length=32, choices=Method.choices, default=Method.CASH)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="due_payments")
    description = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="due_payment_amount_positive"),
        ]
        indexes = [
            models.Index(fields=["due_type", "due_id"], name="due_payment_ref_idx"),
            models.Index(fields=["branch", "payment_date"], name="due_payment_branch_date_idx"),
        ]
