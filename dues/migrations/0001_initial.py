import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

STATUS_CHOICES = [
    ("pending", "Pending"),
    ("partial", "Partial"),
    ("paid", "Paid"),
    ("overdue", "Overdue"),
    ("cancelled", "Cancelled"),
]


def due_fields(class_name):
    return [
        ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
        ("due_date", models.DateField()),
        ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
        ("paid_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
        ("remaining_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
        ("status", models.CharField(choices=STATUS_CHOICES, default="pending", max_length=16)),
        ("due_type", models.CharField(blank=True, default="", max_length=64)),
        ("description", models.TextField(blank=True, default="")),
        ("version", models.PositiveIntegerField(default=0)),
        ("created_at", models.DateTimeField(auto_now_add=True)),
        ("updated_at", models.DateTimeField(auto_now=True)),
        (
            "branch",
            models.ForeignKey(
                on_delete=django.db.models.deletion.PROTECT,
                related_name=f"{class_name}s",
                to="core.branch",
            ),
        ),
        (
            "stock_movement",
            models.ForeignKey(
                on_delete=django.db.models.deletion.PROTECT,
                related_name=f"{class_name}s",
                to="inventory.stockmovement",
            ),
        ),
    ]


def due_options(class_name):
    return {
        "ordering": ["due_date", "-created_at"],
        "abstract": False,
        "indexes": [
            models.Index(fields=["branch", "status"], name=f"{class_name}_br_status_idx"),
            models.Index(fields=["due_date"], name=f"{class_name}_due_date_idx"),
        ],
        "constraints": [
            models.UniqueConstraint(
                condition=models.Q(("status", "cancelled"), _negated=True),
                fields=("stock_movement",),
                name=f"dues_{class_name}_one_open_per_movement",
            ),
            models.CheckConstraint(
                condition=models.Q(("total_amount__gt", 0)),
                name=f"dues_{class_name}_total_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(("paid_amount__gte", 0), ("paid_amount__lte", models.F("total_amount"))),
                name=f"dues_{class_name}_paid_in_range",
            ),
        ],
    }


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        ("inventory", "0001_initial"),
        ("sales", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="SupplierDue",
            fields=due_fields("supplierdue")
            + [
                (
                    "supplier",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dues",
                        to="inventory.supplier",
                    ),
                ),
            ],
            options=due_options("supplierdue"),
        ),
        migrations.CreateModel(
            name="BranchDue",
            fields=due_fields("branchdue")
            + [
                (
                    "counterparty_branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="counterparty_dues",
                        to="core.branch",
                    ),
                ),
            ],
            options=due_options("branchdue"),
        ),
        migrations.CreateModel(
            name="CustomerDue",
            fields=due_fields("customerdue")
            + [
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dues",
                        to="sales.customer",
                    ),
                ),
            ],
            options=due_options("customerdue"),
        ),
        migrations.CreateModel(
            name="DuePayment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "due_type",
                    models.CharField(
                        choices=[("supplier", "Supplier"), ("customer", "Customer"), ("branch", "Branch")],
                        max_length=16,
                    ),
                ),
                ("due_id", models.UUIDField()),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("payment_date", models.DateField()),
                (
                    "payment_method",
                    models.CharField(
                        choices=[
                            ("cash", "Cash"),
                            ("bank_transfer", "Bank transfer"),
                            ("cheque", "Cheque"),
                            ("card", "Card"),
                        ],
                        default="cash",
                        max_length=32,
                    ),
                ),
                ("description", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="due_payments",
                        to="core.branch",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["due_type", "due_id"], name="due_payment_ref_idx"),
                    models.Index(fields=["branch", "payment_date"], name="due_payment_branch_date_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="due_payment_amount_positive"),
                ],
            },
        ),
    ]
