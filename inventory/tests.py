from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import (
    AlreadyCancelled,
    InsufficientStock,
    InvalidDueState,
    LedgerValidationError,
    RecordNotFound,
)
from common.permissions import caller_context_for
from core.models import AuditLog, Branch, User
from dues import payments
from dues.ledger import LEDGERS
from dues.models import BranchDue, Due, DuePayment, SupplierDue
from inventory import movements
from inventory.models import Product, ProductStock, StockMovement, Supplier


class MovementFixtureMixin:
    def setUp(self):
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="A", name="Branch A")
        self.branch_b = Branch.objects.create(code="B", name="Branch B")
        self.branch_c = Branch.objects.create(code="C", name="Branch C")
        self.supplier = Supplier.objects.create(branch=self.branch_a, name="Nile Textiles", code="NT-1")
        self.product = Product.objects.create(sku="LIN-001", name="Linen")
        ProductStock.objects.create(product=self.product, branch=self.branch_a, quantity=Decimal("100"))

        self.admin_a = self.user_model.objects.create_user(
            username="admin-a",
            password="pass1234",
            branch=self.branch_a,
            role=User.Role.BRANCH_ADMIN,
        )
        self.staff_a = self.user_model.objects.create_user(username="staff-a", password="pass1234", branch=self.branch_a)
        self.staff_b = self.user_model.objects.create_user(username="staff-b", password="pass1234", branch=self.branch_b)
        self.staff_c = self.user_model.objects.create_user(username="staff-c", password="pass1234", branch=self.branch_c)

    def stock(self, branch):
        level = ProductStock.objects.filter(product=self.product, branch=branch).first()
        return level.quantity if level else Decimal("0")

    def record(self, movement_type=StockMovement.MovementType.ARRIVAL, **overrides):
        data = {
            "movement_type": movement_type,
            "product_id": self.product.id,
            "branch_id": self.branch_a.id,
            "quantity": "50",
            "unit_price_per_meter": "100",
        }
        if movement_type == StockMovement.MovementType.ARRIVAL:
            data["supplier_id"] = self.supplier.id
        if movement_type in StockMovement.TRANSFER_TYPES:
            data["reference_branch_id"] = self.branch_b.id
        data.update(overrides)
        return movements.record_movement(data, user_id=self.admin_a.id)


class RecordMovementTests(MovementFixtureMixin, TestCase):
    def test_arrival_from_supplier_opens_supplier_due(self):
        movement, due = self.record()

        self.assertEqual(movement.total_amount, Decimal("5000.00"))
        self.assertEqual(self.stock(self.branch_a), Decimal("150"))
        self.assertIsInstance(due, SupplierDue)
        self.assertEqual(due.supplier_id, self.supplier.id)
        self.assertEqual(due.stock_movement_id, movement.id)
        self.assertEqual((due.status, due.total_amount, due.remaining_amount), (Due.Status.PENDING, Decimal("5000.00"), Decimal("5000.00")))
        self.assertEqual(due.due_type, "stock_purchase")
        self.assertEqual(due.due_date, timezone.localdate() + timedelta(days=30))

    def test_arrival_paid_upfront_starts_partial(self):
        _, due = self.record(paid_amount="1000")

        self.assertEqual(due.status, Due.Status.PARTIAL)
        self.assertEqual(due.remaining_amount, Decimal("4000.00"))

    def test_transfer_out_opens_one_payable_branch_due(self):
        movement, due = self.record(StockMovement.MovementType.TRANSFER_OUT, quantity="50", unit_price_per_meter="10")

        self.assertIsInstance(due, BranchDue)
        self.assertEqual(due.branch_id, self.branch_a.id)
        self.assertEqual(due.counterparty_branch_id, self.branch_b.id)
        self.assertEqual(due.total_amount, Decimal("500.00"))
        self.assertEqual(due.due_type, "payable")
        self.assertEqual(due.due_date, timezone.localdate() + timedelta(days=15))
        self.assertEqual(len(movements.movement_dues(movement.id)), 1)
        self.assertEqual(self.stock(self.branch_a), Decimal("50"))
        self.assertEqual(self.stock(self.branch_b), Decimal("50"))

    def test_transfer_in_opens_receivable_due(self):
        _, due = self.record(StockMovement.MovementType.TRANSFER_IN, quantity="5", unit_price_per_meter="20")

        self.assertEqual(due.due_type, "receivable")
        self.assertEqual(self.stock(self.branch_a), Decimal("105"))

    @override_settings(SUPPLIER_DUE_TERM_DAYS=7)
    def test_due_term_is_configurable(self):
        _, due = self.record()

        self.assertEqual(due.due_date, timezone.localdate() + timedelta(days=7))

    def test_zero_total_records_movement_without_due(self):
        movement, due = self.record(unit_price_per_meter="0")

        self.assertIsNone(due)
        self.assertEqual(movement.total_amount, Decimal("0.00"))
        self.assertFalse(SupplierDue.objects.exists())

    def test_manual_movement_skips_stock_and_due(self):
        _, due = self.record(auto_update_product=False)

        self.assertIsNone(due)
        self.assertEqual(self.stock(self.branch_a), Decimal("100"))

    def test_dispatch_beyond_stock_is_rejected(self):
        with self.assertRaises(InsufficientStock):
            self.record(StockMovement.MovementType.DISPATCH, quantity="150")

        self.assertFalse(StockMovement.objects.exists())
        self.assertEqual(self.stock(self.branch_a), Decimal("100"))

    def test_transfer_validation(self):
        with self.assertRaises(LedgerValidationError):
            self.record(StockMovement.MovementType.TRANSFER_OUT, reference_branch_id=None)
        with self.assertRaises(LedgerValidationError):
            self.record(StockMovement.MovementType.TRANSFER_OUT, reference_branch_id=self.branch_a.id)

    def test_paid_above_total_is_rejected(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            self.record(paid_amount="5000.01")

        self.assertIn("paid_amount", ctx.exception.errors)

    def test_due_failure_rolls_back_movement_and_stock(self):
        ledger = LEDGERS[DuePayment.DueType.SUPPLIER]

        with patch.object(ledger, "create", side_effect=RuntimeError("ledger unavailable")):
            with self.assertRaises(RuntimeError):
                self.record()

        self.assertFalse(StockMovement.objects.exists())
        self.assertEqual(self.stock(self.branch_a), Decimal("100"))


    def test_stock_row_inserted_by_a_concurrent_movement_is_reused(self):
        ProductStock.objects.create(product=self.product, branch=self.branch_b, quantity=Decimal("30"))
        select_for_update = ProductStock.objects.select_for_update
        lookups = []

        def row_not_yet_visible():
            lookups.append(1)
            queryset = select_for_update()
            return queryset.none() if len(lookups) == 1 else queryset

        with patch.object(ProductStock.objects, "select_for_update", side_effect=row_not_yet_visible):
            movement, _ = self.record(branch_id=self.branch_b.id)

        self.assertEqual(movement.status, StockMovement.Status.COMPLETED)
        self.assertEqual(ProductStock.objects.filter(product=self.product, branch=self.branch_b).count(), 1)
        self.assertEqual(self.stock(self.branch_b), Decimal("80"))


class UpdateMovementTests(MovementFixtureMixin, TestCase):
    def test_quantity_change_resyncs_due_and_stock(self):
        movement, due = self.record()
        payments.add_payment(due_type="supplier", due_id=due.id, amount="2000", payment_date=timezone.localdate())

        movement, dues = movements.update_movement(movement.id, {"quantity": "60"})

        self.assertEqual(movement.total_amount, Decimal("6000.00"))
        self.assertEqual(self.stock(self.branch_a), Decimal("160"))
        self.assertEqual(len(dues), 1)
        self.assertEqual(
            (dues[0].total_amount, dues[0].paid_amount, dues[0].remaining_amount, dues[0].status),
            (Decimal("6000.00"), Decimal("2000.00"), Decimal("4000.00"), Due.Status.PARTIAL),
        )

    def test_total_below_paid_is_rejected_and_rolled_back(self):
        movement, due = self.record()
        payments.add_payment(due_type="supplier", due_id=due.id, amount="2000", payment_date=timezone.localdate())

        with self.assertRaises(LedgerValidationError):
            movements.update_movement(movement.id, {"quantity": "10", "total_amount": "1500"})

        movement.refresh_from_db()
        due.refresh_from_db()
        self.assertEqual((movement.quantity, movement.total_amount), (Decimal("50.00"), Decimal("5000.00")))
        self.assertEqual(due.total_amount, Decimal("5000.00"))
        self.assertEqual(self.stock(self.branch_a), Decimal("150"))

    def test_paid_amount_change_moves_due(self):
        movement, due = self.record()

        movement, dues = movements.update_movement(movement.id, {"paid_amount": "1000"})

        self.assertEqual(movement.remaining_amount, Decimal("4000.00"))
        self.assertEqual(dues[0].paid_amount, Decimal("1000.00"))
        self.assertEqual(dues[0].status, Due.Status.PARTIAL)

    def test_pricing_a_zero_total_movement_opens_due(self):
        movement, due = self.record(unit_price_per_meter="0")
        self.assertIsNone(due)

        movement, dues = movements.update_movement(movement.id, {"unit_price_per_meter": "10"})

        self.assertEqual(len(dues), 1)
        self.assertEqual(dues[0].total_amount, Decimal("500.00"))

    def test_edit_does_not_reopen_a_cancelled_due(self):
        movement, due = self.record()
        LEDGERS[DuePayment.DueType.SUPPLIER].cancel(due.id)

        movement, dues = movements.update_movement(movement.id, {"notes": "typo fix"})
        self.assertEqual(dues, [])
        movement, dues = movements.update_movement(movement.id, {"quantity": "60"})
        self.assertEqual(dues, [])

        self.assertEqual(
            list(SupplierDue.objects.filter(stock_movement=movement).values_list("id", "status")),
            [(due.id, Due.Status.CANCELLED)],
        )
        self.assertEqual(movement.notes, "typo fix")
        self.assertEqual(self.stock(self.branch_a), Decimal("160"))

    def test_identity_fields_cannot_change(self):
        movement, _ = self.record()
        other = Supplier.objects.create(name="Other", code="OT-1")

        with self.assertRaises(LedgerValidationError) as ctx:
            movements.update_movement(movement.id, {"supplier_id": other.id, "quantity": "70"})

        self.assertIn("supplier_id", ctx.exception.errors)
        self.assertEqual(self.stock(self.branch_a), Decimal("150"))

    def test_other_branch_caller_cannot_update(self):
        movement, _ = self.record()

        with self.assertRaises(RecordNotFound):
            movements.update_movement(movement.id, {"quantity": "60"}, caller=caller_context_for(self.staff_c))


class CancelMovementTests(MovementFixtureMixin, TestCase):
    def test_unpaid_due_is_deleted(self):
        movement, due = self.record(StockMovement.MovementType.TRANSFER_OUT, quantity="50", unit_price_per_meter="10")

        movement, effects = movements.cancel_movement(movement.id)

        self.assertEqual(movement.status, StockMovement.Status.CANCELLED)
        self.assertEqual(effects, [{"due_type": "branch", "due_id": str(due.id), "action": "deleted"}])
        self.assertFalse(BranchDue.objects.filter(id=due.id).exists())
        self.assertIsNone(LEDGERS[DuePayment.DueType.BRANCH].get_by_stock_movement(movement.id))
        self.assertEqual(self.stock(self.branch_a), Decimal("100"))
        self.assertEqual(self.stock(self.branch_b), Decimal("0"))

    def test_partly_paid_due_is_cancelled(self):
        movement, due = self.record()
        payments.add_payment(due_type="supplier", due_id=due.id, amount="1000", payment_date=timezone.localdate())

        _, effects = movements.cancel_movement(movement.id)

        due.refresh_from_db()
        self.assertEqual(effects[0]["action"], "cancelled")
        self.assertEqual(due.status, Due.Status.CANCELLED)
        self.assertEqual(due.paid_amount, Decimal("1000.00"))
        self.assertEqual(self.stock(self.branch_a), Decimal("100"))

    def test_paid_due_blocks_cancellation(self):
        movement, due = self.record()
        payments.add_payment(due_type="supplier", due_id=due.id, amount="5000", payment_date=timezone.localdate())

        with self.assertRaises(InvalidDueState):
            movements.cancel_movement(movement.id)

        movement.refresh_from_db()
        self.assertEqual(movement.status, StockMovement.Status.COMPLETED)
        self.assertEqual(self.stock(self.branch_a), Decimal("150"))

    def test_cancel_twice(self):
        movement, _ = self.record()
        movements.cancel_movement(movement.id)

        with self.assertRaises(AlreadyCancelled):
            movements.cancel_movement(movement.id)
        with self.assertRaises(AlreadyCancelled):
            movements.update_movement(movement.id, {"quantity": "10"})

    def test_adjustment_cancel_restores_previous_quantity(self):
        movement, due = self.record(StockMovement.MovementType.ADJUSTMENT, quantity="40", unit_price_per_meter="0")

        self.assertIsNone(due)
        self.assertEqual(movement.quantity_before, Decimal("100.00"))
        self.assertEqual(self.stock(self.branch_a), Decimal("40"))

        movements.cancel_movement(movement.id)

        self.assertEqual(self.stock(self.branch_a), Decimal("100"))


class MovementQueryTests(MovementFixtureMixin, TestCase):
    def test_list_hides_cancelled_by_default(self):
        kept, _ = self.record()
        dropped, _ = self.record(StockMovement.MovementType.DISPATCH, quantity="10")
        movements.cancel_movement(dropped.id)

        self.assertEqual([m.id for m in movements.list_movements(branch_id=self.branch_a.id)], [kept.id])
        self.assertEqual(movements.list_movements(include_cancelled=True).count(), 2)
        with self.assertRaises(LedgerValidationError):
            movements.list_movements(movement_type="teleport")

    def test_summary_groups_by_type(self):
        self.record(quantity="10", unit_price_per_meter="100")
        self.record(quantity="30", unit_price_per_meter="200")
        self.record(StockMovement.MovementType.DISPATCH, quantity="5", unit_price_per_meter="0")

        rows = {row["movement_type"]: row for row in movements.movement_summary(branch_id=self.branch_a.id)}

        self.assertEqual(rows["arrival"]["count"], 2)
        self.assertEqual(rows["arrival"]["total_quantity"], Decimal("40"))
        self.assertEqual(rows["arrival"]["average_price"], Decimal("150.00"))
        self.assertEqual(rows["arrival"]["total_amount"], Decimal("7000"))
        self.assertEqual(rows["dispatch"]["count"], 1)


class MovementApiTests(MovementFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def post_movement(self, **overrides):
        data = {
            "movement_type": "arrival",
            "product_id": str(self.product.id),
            "supplier_id": str(self.supplier.id),
            "quantity": "50",
            "unit_price_per_meter": "100",
        }
        data.update(overrides)
        return self.client.post("/api/v1/stock-movements/", data, format="json")

    def test_admin_records_movement_with_due(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.post_movement()

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertTrue(payload["success"])
        movement = payload["data"]["movement"]
        self.assertEqual(movement["branch"], str(self.branch_a.id))
        self.assertEqual(movement["total_amount"], "5000.00")
        self.assertEqual(payload["data"]["due"]["status"], "pending")
        self.assertEqual(payload["data"]["due"]["counterparty_name"], "Nile Textiles")
        self.assertTrue(AuditLog.objects.filter(action="stock_movement.create", entity_id=movement["id"]).exists())

    def test_staff_cannot_record_movements(self):
        self.client.force_authenticate(user=self.staff_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.post_movement()

        self.assertEqual(response.status_code, 403)
        self.assertFalse(StockMovement.objects.exists())

    def test_admin_cannot_record_for_other_branch(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.post_movement(branch_id=str(self.branch_b.id))

        self.assertEqual(response.status_code, 403)

    def test_transfer_without_reference_branch_is_invalid(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.post_movement(movement_type="transfer_out", supplier_id=None)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("reference_branch_id", response.json()["errors"])

    def test_insufficient_stock_error_code(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.post_movement(movement_type="dispatch", supplier_id=None, quantity="500")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "insufficient_stock")

    def test_cancel_transfer_removes_its_due(self):
        movement, _ = self.record(StockMovement.MovementType.TRANSFER_OUT, quantity="50", unit_price_per_meter="10")
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.delete(f"/api/v1/stock-movements/{movement.id}/")

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["movement"]["status"], "cancelled")
        self.assertEqual(data["due_effects"][0]["action"], "deleted")

        lookup = self.client.get(f"/api/v1/dues/branch/by-stock-movement/{movement.id}/")
        self.assertEqual(lookup.status_code, 200)
        self.assertIsNone(lookup.json()["data"])
        self.assertEqual(lookup.json()["message"], "No due found for this stock movement.")

    def test_update_returns_resynced_dues(self):
        movement, _ = self.record()
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.patch(f"/api/v1/stock-movements/{movement.id}/", {"quantity": "60"}, format="json")

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["movement"]["total_amount"], "6000.00")
        self.assertEqual(data["dues"][0]["total_amount"], "6000.00")
        self.assertTrue(AuditLog.objects.filter(action="stock_movement.update", entity_id=movement.id).exists())

    def test_transfer_visible_to_both_branches_only(self):
        movement, _ = self.record(StockMovement.MovementType.TRANSFER_OUT, quantity="5", unit_price_per_meter="10")

        self.client.force_authenticate(user=self.staff_b)
        self.assertEqual(self.client.get(f"/api/v1/stock-movements/{movement.id}/").status_code, 200)

        self.client.force_authenticate(user=self.staff_c)
        response = self.client.get(f"/api/v1/stock-movements/{movement.id}/")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_list_and_levels_are_branch_scoped(self):
        self.record()
        ProductStock.objects.create(product=self.product, branch=self.branch_c, quantity=Decimal("7"))
        self.client.force_authenticate(user=self.staff_a)

        listing = self.client.get("/api/v1/stock-movements/", {"branch_id": str(self.branch_c.id)}).json()["data"]
        levels = self.client.get("/api/v1/stock-movements/levels/").json()["data"]

        self.assertEqual(listing["count"], 1)
        self.assertEqual([row["branch"] for row in levels["results"]], [str(self.branch_a.id)])
        self.assertEqual(levels["results"][0]["quantity"], "150.00")
