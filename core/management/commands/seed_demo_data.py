from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from core.models import Branch
from dues import payments
from dues.ledger import LEDGERS
from dues.models import DuePayment
from inventory import movements
from inventory.models import Product, ProductStock, StockMovement, Supplier
from sales.models import Customer

DEMO_NOTE = "demo seed"


class Command(BaseCommand):
    help = "Seed demo branches, stock movements and dues for local development."

    def _user(self, User, username, password, **defaults):
        user, created = User.objects.get_or_create(username=username, defaults={"is_active": True, **defaults})
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        main, _ = Branch.objects.get_or_create(code="MAIN", defaults={"name": "Main Branch", "timezone": "UTC"})
        east, _ = Branch.objects.get_or_create(code="EAST", defaults={"name": "East Branch", "timezone": "UTC"})

        admin_user = self._user(
            User,
            "admin",
            "admin1234",
            email="admin@example.com",
            role=User.Role.SUPER_ADMIN,
            is_staff=True,
            is_superuser=True,
        )
        self._user(User, "manager", "manager1234", email="manager@example.com", role=User.Role.BRANCH_ADMIN, branch=main)
        self._user(User, "clerk", "clerk1234", email="clerk@example.com", role=User.Role.STAFF, branch=main)

        supplier, _ = Supplier.objects.get_or_create(code="SUP-001", defaults={"name": "Delta Weavers", "branch": main})
        customer, _ = Customer.objects.get_or_create(branch=main, name="Walk-in Tailor", defaults={"phone": "0100000000"})
        linen, _ = Product.objects.get_or_create(sku="LIN-001", defaults={"name": "Linen 150cm"})
        ProductStock.objects.get_or_create(product=linen, branch=main, defaults={"quantity": Decimal("200")})

        if StockMovement.objects.filter(notes=DEMO_NOTE).exists():
            self.stdout.write(self.style.WARNING("Demo movements already exist; skipped."))
            return

        arrival, supplier_due = movements.record_movement(
            {
                "movement_type": StockMovement.MovementType.ARRIVAL,
                "product_id": linen.id,
                "branch_id": main.id,
                "supplier_id": supplier.id,
                "quantity": "120",
                "unit_price_per_meter": "45",
                "notes": DEMO_NOTE,
            },
            user_id=admin_user.id,
        )
        payments.add_payment(
            due_type=DuePayment.DueType.SUPPLIER,
            due_id=supplier_due.id,
            amount="2000",
            payment_date=timezone.localdate(),
            user_id=admin_user.id,
            payment_method=DuePayment.Method.BANK_TRANSFER,
        )

        transfer, branch_due = movements.record_movement(
            {
                "movement_type": StockMovement.MovementType.TRANSFER_OUT,
                "product_id": linen.id,
                "branch_id": main.id,
                "reference_branch_id": east.id,
                "quantity": "40",
                "unit_price_per_meter": "50",
                "notes": DEMO_NOTE,
            },
            user_id=admin_user.id,
        )

        dispatch, _ = movements.record_movement(
            {
                "movement_type": StockMovement.MovementType.DISPATCH,
                "product_id": linen.id,
                "branch_id": main.id,
                "quantity": "15",
                "unit_price_per_meter": "50",
                "notes": DEMO_NOTE,
            },
            user_id=admin_user.id,
        )
        customer_due = LEDGERS[DuePayment.DueType.CUSTOMER].create(
            counterparty_id=customer.id,
            branch_id=main.id,
            stock_movement_id=dispatch.id,
            due_date=timezone.localdate() - timedelta(days=3),
            total_amount="750",
            due_type="credit_sale",
            description="Tailoring order on account",
        )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, manager/manager1234, clerk/clerk1234")
        self.stdout.write(f"Movements: arrival {arrival.id} | transfer {transfer.id} | dispatch {dispatch.id}")
        self.stdout.write(f"Dues: supplier {supplier_due.id} | branch {branch_due.id} | customer {customer_due.id} (overdue)")
