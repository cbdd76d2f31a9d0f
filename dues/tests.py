import threading
import unittest
import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import (
    AlreadyCancelled,
    ConcurrentModification,
    DuplicateDue,
    ExceedsRemaining,
    InvalidAmount,
    InvalidDueState,
    InvalidReference,
    LedgerValidationError,
    RecordNotFound,
    StorageError,
)
from common.permissions import caller_context_for
from core.models import AuditLog, Branch, User
from dues import payments
from dues.amounts import compute_remaining, derive_status, effective_status, to_money, validate_payment_amount
from dues.ledger import LEDGERS, DueRef, get_ledger
from dues.models import CustomerDue, Due, DuePayment, SupplierDue
from inventory.models import Product, StockMovement, Supplier
from sales.models import Customer


def money(value):
    return Decimal(value).quantize(Decimal("0.01"))


class AmountHelperTests(SimpleTestCase):
    def test_compute_remaining(self):
        self.assertEqual(compute_remaining("1000", "400"), money("600"))
        self.assertEqual(compute_remaining(Decimal("10.005"), 0), money("10.01"))

    def test_derive_status(self):
        today = date(2026, 5, 10)
        self.assertEqual(derive_status(100, 0), Due.Status.PENDING)
        self.assertEqual(derive_status(100, 40), Due.Status.PARTIAL)
        self.assertEqual(derive_status(100, 100), Due.Status.PAID)
        self.assertEqual(derive_status(100, 40, date(2026, 5, 9), today), Due.Status.OVERDUE)
        self.assertEqual(derive_status(100, 0, date(2026, 5, 10), today), Due.Status.PENDING)
        self.assertEqual(derive_status(100, 100, date(2026, 1, 1), today), Due.Status.PAID)

    def test_validate_payment_amount(self):
        self.assertEqual(validate_payment_amount("25.50", "100"), money("25.50"))
        with self.assertRaises(InvalidAmount):
            validate_payment_amount(0, 100)
        with self.assertRaises(InvalidAmount):
            validate_payment_amount("-5", 100)
        with self.assertRaises(ExceedsRemaining):
            validate_payment_amount("100.01", "100")

    def test_to_money_rejects_garbage(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            to_money("abc", "total_amount")
        self.assertEqual(ctx.exception.errors, {"total_amount": "A valid number is required."})

    def test_due_ref_rejects_malformed_ids_and_types(self):
        with self.assertRaises(LedgerValidationError):
            DueRef("supplier", "not-a-uuid")
        with self.assertRaises(LedgerValidationError):
            get_ledger("employee")


class DueFixtureMixin:
    def setUp(self):
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="DA", name="Dues A")
        self.branch_b = Branch.objects.create(code="DB", name="Dues B")
        self.branch_c = Branch.objects.create(code="DC", name="Dues C")
        self.supplier = Supplier.objects.create(branch=self.branch_a, name="Cotton Mills", code="SUP-1")
        self.customer = Customer.objects.create(branch=self.branch_a, name="Walk-in Customer", phone="0100")
        self.product = Product.objects.create(sku="FAB-1", name="Linen")

        self.super_admin = self.user_model.objects.create_user(
            username="dues-super",
            password="pass1234",
            role=User.Role.SUPER_ADMIN,
        )
        self.admin_a = self.user_model.objects.create_user(
            username="dues-admin-a",
            password="pass1234",
            branch=self.branch_a,
            role=User.Role.BRANCH_ADMIN,
        )
        self.staff_a = self.user_model.objects.create_user(
            username="dues-staff-a",
            password="pass1234",
            branch=self.branch_a,
            role=User.Role.STAFF,
        )
        self.staff_c = self.user_model.objects.create_user(
            username="dues-staff-c",
            password="pass1234",
            branch=self.branch_c,
            role=User.Role.STAFF,
        )

        self.supplier_ledger = LEDGERS[DuePayment.DueType.SUPPLIER]
        self.branch_ledger = LEDGERS[DuePayment.DueType.BRANCH]
        self.customer_ledger = LEDGERS[DuePayment.DueType.CUSTOMER]

    def make_movement(self, movement_type=StockMovement.MovementType.ARRIVAL, **overrides):
        data = {
            "movement_type": movement_type,
            "product": self.product,
            "branch": self.branch_a,
            "quantity": Decimal("10"),
            "unit_price_per_meter": Decimal("100"),
            "total_amount": Decimal("1000"),
            "remaining_amount": Decimal("1000"),
            "date": timezone.localdate(),
            "auto_update_product": False,
        }
        if movement_type in StockMovement.TRANSFER_TYPES:
            data["reference_branch"] = self.branch_b
        if movement_type == StockMovement.MovementType.ARRIVAL:
            data["supplier"] = self.supplier
        data.update(overrides)
        return StockMovement.objects.create(**data)

    def make_supplier_due(self, total="1000", paid="0", due_date=None, movement=None, branch=None):
        branch = branch or self.branch_a
        movement = movement or self.make_movement(branch=branch)
        return self.supplier_ledger.create(
            counterparty_id=self.supplier.id,
            branch_id=branch.id,
            stock_movement_id=movement.id,
            due_date=due_date or timezone.localdate() + timedelta(days=30),
            total_amount=total,
            paid_amount=paid,
            due_type="stock_purchase",
        )


class DueLedgerTests(DueFixtureMixin, TestCase):
    def test_create_computes_remaining_and_initial_status(self):
        due = self.make_supplier_due(total="1000")

        self.assertEqual(due.remaining_amount, money("1000"))
        self.assertEqual(due.status, Due.Status.PENDING)
        self.assertEqual(due.version, 0)

        partial = self.make_supplier_due(total="500", paid="200")
        self.assertEqual(partial.remaining_amount, money("300"))
        self.assertEqual(partial.status, Due.Status.PARTIAL)

        settled = self.make_supplier_due(total="500", paid="500")
        self.assertEqual(settled.status, Due.Status.PAID)

    def test_create_rejects_invalid_amounts_before_writing(self):
        for total, paid in (("0", "0"), ("-10", "0"), ("100", "-1"), ("100", "101")):
            with self.subTest(total=total, paid=paid):
                with self.assertRaises(LedgerValidationError):
                    self.make_supplier_due(total=total, paid=paid)

        self.assertEqual(SupplierDue.objects.count(), 0)

    def test_create_reports_missing_fields(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            self.supplier_ledger.create(
                counterparty_id=None, branch_id=None, stock_movement_id=None, due_date=None, total_amount=None
            )

        self.assertEqual(set(ctx.exception.errors), {"supplier", "branch_id", "stock_movement_id", "due_date", "total_amount"})

    def test_every_due_type_requires_its_stock_movement(self):
        for ledger, counterparty_id in (
            (self.supplier_ledger, self.supplier.id),
            (self.customer_ledger, self.customer.id),
            (self.branch_ledger, self.branch_b.id),
        ):
            with self.subTest(due_type=ledger.due_type):
                with self.assertRaises(LedgerValidationError) as ctx:
                    ledger.create(
                        counterparty_id=counterparty_id,
                        branch_id=self.branch_a.id,
                        stock_movement_id=None,
                        due_date=timezone.localdate(),
                        total_amount="100",
                    )
                self.assertEqual(ctx.exception.errors, {"stock_movement_id": "This field is required."})

        self.assertEqual(SupplierDue.objects.count() + CustomerDue.objects.count(), 0)

    def test_create_rejects_inactive_references(self):
        self.supplier.is_active = False
        self.supplier.save(update_fields=["is_active"])

        with self.assertRaises(InvalidReference):
            self.make_supplier_due()

        self.supplier.is_active = True
        self.supplier.save(update_fields=["is_active"])
        self.branch_a.is_active = False
        self.branch_a.save(update_fields=["is_active"])

        with self.assertRaises(InvalidReference):
            self.make_supplier_due()

    def test_branch_due_must_come_from_transfer_movement(self):
        arrival = self.make_movement(StockMovement.MovementType.ARRIVAL)

        with self.assertRaises(LedgerValidationError):
            self.branch_ledger.create(
                counterparty_id=self.branch_b.id,
                branch_id=self.branch_a.id,
                stock_movement_id=None,
                due_date=timezone.localdate(),
                total_amount="100",
            )
        with self.assertRaises(InvalidReference):
            self.branch_ledger.create(
                counterparty_id=self.branch_b.id,
                branch_id=self.branch_a.id,
                stock_movement_id=arrival.id,
                due_date=timezone.localdate(),
                total_amount="100",
            )
        with self.assertRaises(LedgerValidationError):
            self.branch_ledger.create(
                counterparty_id=self.branch_a.id,
                branch_id=self.branch_a.id,
                stock_movement_id=self.make_movement(StockMovement.MovementType.TRANSFER_OUT).id,
                due_date=timezone.localdate(),
                total_amount="100",
            )

    def test_one_due_per_movement(self):
        movement = self.make_movement()
        first = self.make_supplier_due(movement=movement)

        with self.assertRaises(DuplicateDue):
            self.make_supplier_due(movement=movement)
        self.assertEqual(SupplierDue.objects.filter(stock_movement=movement).count(), 1)

        self.supplier_ledger.cancel(first.id)
        replacement = self.make_supplier_due(movement=movement)
        self.assertEqual(self.supplier_ledger.get_by_stock_movement(movement.id).id, replacement.id)

    def test_get_by_stock_movement_ignores_cancelled(self):
        movement = self.make_movement()
        due = self.make_supplier_due(movement=movement)
        self.supplier_ledger.cancel(due.id)

        self.assertIsNone(self.supplier_ledger.get_by_stock_movement(movement.id))

    def test_supplier_due_settlement_scenario(self):
        due = self.make_supplier_due(total="5000", movement=self.make_movement(total_amount=Decimal("5000")))
        self.assertEqual((due.status, due.remaining_amount), (Due.Status.PENDING, money("5000")))

        due = self.supplier_ledger.apply_payment(due.id, "2000")
        self.assertEqual((due.status, due.paid_amount, due.remaining_amount), (Due.Status.PARTIAL, money("2000"), money("3000")))

        due = self.supplier_ledger.apply_payment(due.id, "3000")
        self.assertEqual((due.status, due.paid_amount, due.remaining_amount), (Due.Status.PAID, money("5000"), money("0")))

        with self.assertRaises(ExceedsRemaining):
            self.supplier_ledger.apply_payment(due.id, "1")

        due.refresh_from_db()
        self.assertEqual(due.paid_amount, money("5000"))
        self.assertEqual(due.remaining_amount, due.total_amount - due.paid_amount)

    def test_overpayment_leaves_due_unchanged(self):
        due = self.make_supplier_due(total="1000", paid="250")

        with self.assertRaises(ExceedsRemaining):
            self.supplier_ledger.apply_payment(due.id, "750.01")

        due.refresh_from_db()
        self.assertEqual((due.paid_amount, due.remaining_amount, due.status), (money("250"), money("750"), Due.Status.PARTIAL))
        self.assertEqual(due.version, 0)

    def test_reversal_restores_status_and_cannot_go_negative(self):
        due = self.make_supplier_due(total="1000")
        self.supplier_ledger.apply_payment(due.id, "1000")

        due = self.supplier_ledger.apply_payment(due.id, "-400")
        self.assertEqual((due.status, due.paid_amount, due.remaining_amount), (Due.Status.PARTIAL, money("600"), money("400")))

        with self.assertRaises(LedgerValidationError):
            self.supplier_ledger.apply_payment(due.id, "-600.01")

        due = self.supplier_ledger.apply_payment(due.id, "-600")
        self.assertEqual(due.status, Due.Status.PENDING)

    def test_zero_delta_is_rejected(self):
        due = self.make_supplier_due()

        with self.assertRaises(LedgerValidationError):
            self.supplier_ledger.apply_payment(due.id, "0")

    def test_cancelled_due_rejects_payments_but_allows_reversal(self):
        due = self.make_supplier_due(total="1000")
        self.supplier_ledger.apply_payment(due.id, "300")
        self.supplier_ledger.cancel(due.id)

        with self.assertRaises(InvalidDueState):
            self.supplier_ledger.apply_payment(due.id, "10")

        due = self.supplier_ledger.apply_payment(due.id, "-300")
        self.assertEqual(due.status, Due.Status.CANCELLED)
        self.assertEqual(due.remaining_amount, money("1000"))

    def test_cancel_rules(self):
        due = self.make_supplier_due(total="100")
        cancelled = self.supplier_ledger.cancel(due.id)
        self.assertEqual(cancelled.status, Due.Status.CANCELLED)

        with self.assertRaises(AlreadyCancelled):
            self.supplier_ledger.cancel(due.id)

        paid = self.make_supplier_due(total="100", paid="100")
        with self.assertRaises(InvalidDueState):
            self.supplier_ledger.cancel(paid.id)

        with self.assertRaises(RecordNotFound):
            self.supplier_ledger.cancel(uuid.uuid4())

    def test_delete_removes_payment_log_first(self):
        due = self.make_supplier_due(total="1000")
        payments.add_payment(
            due_type="supplier",
            due_id=due.id,
            amount="100",
            payment_date=timezone.localdate(),
            branch_id=self.branch_a.id,
        )

        deleted_payments = self.supplier_ledger.delete(due.id)

        self.assertEqual(deleted_payments, 1)
        self.assertFalse(SupplierDue.objects.filter(id=due.id).exists())
        self.assertFalse(DuePayment.objects.filter(due_id=due.id).exists())
        with self.assertRaises(RecordNotFound):
            self.supplier_ledger.delete(due.id)

    def test_stale_read_is_retried_and_cannot_overpay(self):
        due = self.make_supplier_due(total="1000")
        stale = SupplierDue.objects.get(pk=due.pk)
        self.supplier_ledger.apply_payment(due.id, "600")

        real_fetch = self.supplier_ledger._fetch_for_update
        calls = []

        def fetch(due_id):
            calls.append(due_id)
            return stale if len(calls) == 1 else real_fetch(due_id)

        with patch.object(self.supplier_ledger, "_fetch_for_update", side_effect=fetch):
            with self.assertLogs("dues.ledger", level="WARNING") as logs:
                with self.assertRaises(ExceedsRemaining):
                    self.supplier_ledger.apply_payment(due.id, "600")

        self.assertEqual(len(calls), 2)
        self.assertTrue(any("due_version_conflict" in line for line in logs.output))
        due.refresh_from_db()
        self.assertEqual((due.paid_amount, due.remaining_amount), (money("600"), money("400")))

    @override_settings(DUE_PAYMENT_CAS_ATTEMPTS=2)
    def test_gives_up_after_configured_attempts(self):
        due = self.make_supplier_due(total="1000")
        stale = SupplierDue.objects.get(pk=due.pk)
        self.supplier_ledger.apply_payment(due.id, "100")

        with patch.object(self.supplier_ledger, "_fetch_for_update", return_value=stale) as fetch:
            with self.assertRaises(ConcurrentModification):
                self.supplier_ledger.apply_payment(due.id, "100")

        self.assertEqual(fetch.call_count, 2)
        due.refresh_from_db()
        self.assertEqual(due.paid_amount, money("100"))

    def test_overdue_is_derived_on_read(self):
        today = timezone.localdate()
        late = self.make_supplier_due(total="100", due_date=today - timedelta(days=1))
        current = self.make_supplier_due(total="100", due_date=today + timedelta(days=1))
        settled_late = self.make_supplier_due(total="100", paid="100", due_date=today - timedelta(days=3))

        late.refresh_from_db()
        self.assertEqual(late.status, Due.Status.PENDING)
        self.assertEqual(effective_status(late), Due.Status.OVERDUE)
        self.assertEqual(effective_status(settled_late), Due.Status.PAID)

        overdue_ids = [due.id for due in self.supplier_ledger.list(status="overdue")]
        self.assertEqual(overdue_ids, [late.id])
        self.assertEqual([due.id for due in self.supplier_ledger.overdue()], [late.id])
        self.assertEqual([due.id for due in self.supplier_ledger.list(status="pending")], [current.id])

    def test_list_filters_and_ordering(self):
        today = timezone.localdate()
        later = self.make_supplier_due(due_date=today + timedelta(days=20))
        sooner = self.make_supplier_due(due_date=today + timedelta(days=5))
        other_branch = self.make_supplier_due(due_date=today + timedelta(days=1), branch=self.branch_b)

        self.assertEqual([due.id for due in self.supplier_ledger.list(branch_id=self.branch_a.id)], [sooner.id, later.id])
        self.assertEqual(
            [due.id for due in self.supplier_ledger.list(counterparty_id=self.supplier.id)],
            [other_branch.id, sooner.id, later.id],
        )
        with self.assertRaises(LedgerValidationError):
            self.supplier_ledger.list(status="archived")

    def test_summary_groups_by_effective_status(self):
        today = timezone.localdate()
        self.make_supplier_due(total="100")
        self.make_supplier_due(total="200", paid="50")
        self.make_supplier_due(total="300", paid="300")
        self.make_supplier_due(total="400", due_date=today - timedelta(days=2))
        cancelled = self.make_supplier_due(total="500")
        self.supplier_ledger.cancel(cancelled.id)

        summary = self.supplier_ledger.summary(branch_id=self.branch_a.id)

        by_status = summary["by_status"]
        self.assertEqual(by_status["pending"]["count"], 1)
        self.assertEqual(by_status["partial"]["remaining_amount"], money("150"))
        self.assertEqual(by_status["paid"]["paid_amount"], money("300"))
        self.assertEqual(by_status["overdue"]["total_amount"], money("400"))
        self.assertEqual(by_status["cancelled"]["count"], 1)
        self.assertEqual(summary["totals"]["count"], 4)
        self.assertEqual(summary["totals"]["total_amount"], money("1000"))
        self.assertEqual(summary["totals"]["remaining_amount"], money("650"))

    def test_customer_ledger_shares_the_rules(self):
        due = self.customer_ledger.create(
            counterparty_id=self.customer.id,
            branch_id=self.branch_a.id,
            stock_movement_id=self.make_movement(StockMovement.MovementType.DISPATCH).id,
            due_date=timezone.localdate(),
            total_amount="80",
        )

        due = self.customer_ledger.apply_payment(due.id, "80")

        self.assertIsInstance(due, CustomerDue)
        self.assertEqual(due.status, Due.Status.PAID)
        self.assertEqual(DueRef("customer", due.id).resolve().customer_id, self.customer.id)


class DuePaymentServiceTests(DueFixtureMixin, TestCase):
    def pay(self, due, amount, **overrides):
        data = {
            "due_type": "supplier",
            "due_id": due.id,
            "amount": amount,
            "payment_date": "2026-03-01",
            "user_id": self.staff_a.id,
            "branch_id": self.branch_a.id,
            "payment_method": "cash",
        }
        data.update(overrides)
        return payments.add_payment(**data)

    def test_delete_payment_round_trips_due_state(self):
        due = self.make_supplier_due(total="1000")
        before = SupplierDue.objects.values("paid_amount", "remaining_amount", "status").get(pk=due.pk)

        payment, paid_due = self.pay(due, "400")
        self.assertEqual((paid_due.paid_amount, paid_due.status), (money("400"), Due.Status.PARTIAL))
        self.assertEqual(payment.payment_date, date(2026, 3, 1))

        restored = payments.delete_payment(payment.id)

        self.assertEqual(
            {"paid_amount": restored.paid_amount, "remaining_amount": restored.remaining_amount, "status": restored.status},
            before,
        )
        self.assertFalse(DuePayment.objects.filter(id=payment.id).exists())

    def test_failed_payment_writes_nothing(self):
        due = self.make_supplier_due(total="100")

        with self.assertRaises(ExceedsRemaining):
            self.pay(due, "150")

        self.assertEqual(DuePayment.objects.count(), 0)
        due.refresh_from_db()
        self.assertEqual(due.paid_amount, money("0"))

    def test_payment_insert_failure_rolls_back_due_update(self):
        due = self.make_supplier_due(total="100")

        with patch("dues.payments.DuePayment.objects.create", side_effect=RuntimeError("insert failed")):
            with self.assertRaises(RuntimeError):
                self.pay(due, "40")

        due.refresh_from_db()
        self.assertEqual((due.paid_amount, due.version), (money("0"), 0))

    def test_database_failure_surfaces_as_storage_error(self):
        due = self.make_supplier_due(total="100")

        with patch("dues.payments.DuePayment.objects.create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                with self.assertRaises(StorageError) as ctx:
                    self.pay(due, "40")

        self.assertEqual((ctx.exception.code, ctx.exception.status_code), ("storage_error", 500))
        self.assertIsInstance(ctx.exception.__cause__, DatabaseError)
        due.refresh_from_db()
        self.assertEqual((due.paid_amount, due.version), (money("0"), 0))
        self.assertEqual(DuePayment.objects.count(), 0)

    def test_add_payment_validates_input(self):
        due = self.make_supplier_due(total="100")

        with self.assertRaises(InvalidAmount):
            self.pay(due, "0")
        with self.assertRaises(LedgerValidationError):
            self.pay(due, "10", payment_method="bitcoin")
        with self.assertRaises(LedgerValidationError):
            self.pay(due, "10", payment_date="01/03/2026")
        with self.assertRaises(LedgerValidationError):
            self.pay(due, "10", due_type="employee")
        with self.assertRaises(RecordNotFound):
            self.pay(due, "10", due_type="customer")

    def test_update_payment_moves_due_by_difference(self):
        due = self.make_supplier_due(total="1000")
        payment, _ = self.pay(due, "300")

        payment, updated_due = payments.update_payment(payment.id, amount="500", payment_method="cheque")
        self.assertEqual(updated_due.paid_amount, money("500"))
        self.assertEqual(payment.payment_method, "cheque")

        payment, updated_due = payments.update_payment(payment.id, amount="100")
        self.assertEqual(updated_due.paid_amount, money("100"))

        with self.assertRaises(ExceedsRemaining):
            payments.update_payment(payment.id, amount="1000.01")

        payment.refresh_from_db()
        due.refresh_from_db()
        self.assertEqual((payment.amount, due.paid_amount), (money("100"), money("100")))

    def test_caller_scope_hides_other_branch_dues(self):
        due = self.make_supplier_due(total="100", branch=self.branch_b)
        caller_a = caller_context_for(self.staff_a)

        with self.assertRaises(RecordNotFound):
            self.pay(due, "10", caller=caller_a)

    def test_bulk_reports_each_entry(self):
        due = self.make_supplier_due(total="100")
        entries = [
            {"due_type": "supplier", "due_id": str(due.id), "amount": "60", "payment_date": "2026-03-01"},
            {"due_type": "supplier", "due_id": str(due.id), "amount": "60", "payment_date": "2026-03-01"},
            {"due_type": "nope", "due_id": str(due.id), "amount": "1", "payment_date": "2026-03-01"},
            "not-an-object",
        ]

        results = payments.add_payments_bulk(entries, user_id=self.staff_a.id)

        self.assertEqual([index for index, _, _ in results], [0, 1, 2, 3])
        self.assertIsNotNone(results[0][1])
        self.assertIsInstance(results[1][2], ExceedsRemaining)
        self.assertEqual(results[2][2].code, "validation_error")
        self.assertEqual(results[3][2].code, "validation_error")
        due.refresh_from_db()
        self.assertEqual(due.paid_amount, money("60"))

        with self.assertRaises(LedgerValidationError):
            payments.add_payments_bulk([])

    def test_list_and_summary(self):
        supplier_due = self.make_supplier_due(total="1000")
        customer_due = self.customer_ledger.create(
            counterparty_id=self.customer.id,
            branch_id=self.branch_a.id,
            stock_movement_id=self.make_movement(StockMovement.MovementType.DISPATCH).id,
            due_date=timezone.localdate(),
            total_amount="500",
        )
        self.pay(supplier_due, "100", payment_date="2026-03-01")
        self.pay(supplier_due, "50", payment_date="2026-03-05", payment_method="card")
        self.pay(customer_due, "70", due_type="customer", payment_date="2026-03-03", user_id=self.admin_a.id)

        listed = list(payments.list_payments(branch_id=self.branch_a.id))
        self.assertEqual([p.payment_date for p in listed], [date(2026, 3, 5), date(2026, 3, 3), date(2026, 3, 1)])
        self.assertEqual(payments.list_payments(due_type="customer").count(), 1)
        self.assertEqual(payments.list_payments(date_from=date(2026, 3, 2), date_to=date(2026, 3, 4)).count(), 1)

        summary = payments.payments_summary(branch_id=self.branch_a.id)
        groups = {(row["due_type"], row["payment_method"]): row for row in summary["groups"]}
        self.assertEqual(groups[("supplier", "cash")]["total_amount"], money("100"))
        self.assertEqual(groups[("supplier", "card")]["due_count"], 1)
        self.assertEqual(groups[("customer", "cash")]["user_count"], 1)
        self.assertEqual(summary["totals"], {"payment_count": 3, "total_amount": money("220")})


@unittest.skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
class ConcurrentPaymentTests(DueFixtureMixin, TransactionTestCase):
    def test_two_racing_payments_cannot_both_succeed(self):
        due = self.make_supplier_due(total="1000")
        barrier = threading.Barrier(2)
        outcomes = []

        def pay():
            try:
                barrier.wait()
                payments.add_payment(
                    due_type="supplier",
                    due_id=due.id,
                    amount="600",
                    payment_date=timezone.localdate(),
                    branch_id=self.branch_a.id,
                )
                outcomes.append("ok")
            except ExceedsRemaining:
                outcomes.append("exceeds_remaining")
            finally:
                connection.close()

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["exceeds_remaining", "ok"])
        due.refresh_from_db()
        self.assertEqual((due.paid_amount, due.remaining_amount), (money("600"), money("400")))
        self.assertEqual(DuePayment.objects.count(), 1)


class DueApiTests(DueFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_list_is_scoped_to_callers_branch(self):
        own = self.make_supplier_due()
        self.make_supplier_due(branch=self.branch_b)
        self.client.force_authenticate(user=self.staff_a)

        response = self.client.get("/api/v1/dues/supplier/", {"branch_id": str(self.branch_b.id)})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        self.assertEqual([row["id"] for row in payload["data"]["results"]], [str(own.id)])
        self.assertEqual(payload["data"]["results"][0]["counterparty_name"], "Cotton Mills")

        self.client.force_authenticate(user=self.super_admin)
        response = self.client.get("/api/v1/dues/supplier/")
        self.assertEqual(response.json()["data"]["count"], 2)

    def test_other_branch_due_is_not_found(self):
        hidden = self.make_supplier_due(branch=self.branch_b)
        self.client.force_authenticate(user=self.staff_a)

        response = self.client.get(f"/api/v1/dues/supplier/{hidden.id}/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")
        self.assertFalse(response.json()["success"])

    def test_branch_due_is_visible_to_counterparty_branch(self):
        movement = self.make_movement(StockMovement.MovementType.TRANSFER_OUT)
        due = self.branch_ledger.create(
            counterparty_id=self.branch_b.id,
            branch_id=self.branch_a.id,
            stock_movement_id=movement.id,
            due_date=timezone.localdate(),
            total_amount="500",
            due_type="payable",
        )
        staff_b = self.user_model.objects.create_user(username="dues-staff-b", password="pass1234", branch=self.branch_b)
        self.client.force_authenticate(user=staff_b)

        detail = self.client.get(f"/api/v1/dues/branch/{due.id}/")
        listing = self.client.get("/api/v1/dues/branch/")

        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["data"]["movement_type"], "transfer_out")
        self.assertEqual(listing.json()["data"]["count"], 1)

        self.client.force_authenticate(user=self.staff_c)
        self.assertEqual(self.client.get(f"/api/v1/dues/branch/{due.id}/").status_code, 404)

    def test_unknown_due_type_is_a_validation_error(self):
        self.client.force_authenticate(user=self.staff_a)

        response = self.client.get("/api/v1/dues/employee/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_staff_cannot_create_dues(self):
        self.client.force_authenticate(user=self.staff_a)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(
                "/api/v1/dues/customer/",
                {"counterparty_id": str(self.customer.id), "due_date": "2026-06-01", "total_amount": "100"},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(CustomerDue.objects.count(), 0)

    def test_admin_creates_due_in_own_branch_with_audit(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            "/api/v1/dues/customer/",
            {
                "counterparty_id": str(self.customer.id),
                "stock_movement_id": str(self.make_movement(StockMovement.MovementType.DISPATCH).id),
                "due_date": "2026-06-01",
                "total_amount": "150.50",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["message"], "Due created.")
        self.assertEqual(payload["data"]["remaining_amount"], "150.50")
        self.assertEqual(payload["data"]["branch_id"], str(self.branch_a.id))
        log = AuditLog.objects.get(action="due.create")
        self.assertEqual(str(log.entity_id), payload["data"]["id"])
        self.assertEqual(log.entity, "customer_due")
        self.assertEqual(log.actor_id, self.admin_a.id)

    def test_create_without_stock_movement_is_rejected(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            "/api/v1/dues/supplier/",
            {"counterparty_id": str(self.supplier.id), "due_date": "2026-06-01", "total_amount": "100"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("stock_movement_id", response.json()["errors"])
        self.assertEqual(SupplierDue.objects.count(), 0)

    def test_admin_cannot_create_due_for_other_branch(self):
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            "/api/v1/dues/supplier/",
            {
                "counterparty_id": str(self.supplier.id),
                "branch_id": str(self.branch_b.id),
                "stock_movement_id": str(self.make_movement(branch=self.branch_b).id),
                "due_date": "2026-06-01",
                "total_amount": "100",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_duplicate_due_is_a_conflict(self):
        movement = self.make_movement()
        self.make_supplier_due(movement=movement)
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(
            "/api/v1/dues/supplier/",
            {
                "counterparty_id": str(self.supplier.id),
                "stock_movement_id": str(movement.id),
                "due_date": "2026-06-01",
                "total_amount": "100",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "duplicate_due")

    def test_by_stock_movement_returns_empty_success(self):
        movement = self.make_movement()
        self.client.force_authenticate(user=self.staff_a)

        response = self.client.get(f"/api/v1/dues/supplier/by-stock-movement/{movement.id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "message": "No due found for this stock movement.", "data": None})

        due = self.make_supplier_due(movement=movement)
        response = self.client.get(f"/api/v1/dues/supplier/by-stock-movement/{movement.id}/")
        self.assertEqual(response.json()["data"]["id"], str(due.id))

    def test_overdue_and_summary_endpoints(self):
        late = self.make_supplier_due(total="100", due_date=timezone.localdate() - timedelta(days=4))
        self.make_supplier_due(total="300")
        self.client.force_authenticate(user=self.staff_a)

        overdue = self.client.get("/api/v1/dues/supplier/overdue/").json()
        self.assertEqual([row["id"] for row in overdue["data"]["results"]], [str(late.id)])
        self.assertEqual(overdue["data"]["results"][0]["status"], "overdue")
        self.assertEqual(overdue["data"]["results"][0]["stored_status"], "pending")
        self.assertTrue(overdue["data"]["results"][0]["is_overdue"])

        summary = self.client.get("/api/v1/dues/supplier/summary/").json()["data"]
        self.assertEqual(summary["by_status"]["overdue"]["count"], 1)
        self.assertEqual(summary["totals"]["total_amount"], "400.00")

    def test_cancel_endpoint(self):
        due = self.make_supplier_due(total="100")
        paid = self.make_supplier_due(total="100", paid="100")
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.post(f"/api/v1/dues/supplier/{due.id}/cancel/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["status"], "cancelled")

        again = self.client.post(f"/api/v1/dues/supplier/{due.id}/cancel/")
        self.assertEqual(again.json()["code"], "already_cancelled")

        blocked = self.client.post(f"/api/v1/dues/supplier/{paid.id}/cancel/")
        self.assertEqual(blocked.status_code, 400)
        self.assertEqual(blocked.json()["code"], "invalid_due_state")

    def test_delete_endpoint_removes_due_and_payments(self):
        due = self.make_supplier_due(total="100")
        payments.add_payment(due_type="supplier", due_id=due.id, amount="10", payment_date="2026-03-01")
        self.client.force_authenticate(user=self.admin_a)

        response = self.client.delete(f"/api/v1/dues/supplier/{due.id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["deleted_payments"], 1)
        self.assertFalse(SupplierDue.objects.filter(id=due.id).exists())
        self.assertTrue(AuditLog.objects.filter(action="due.delete", entity_id=due.id).exists())

    def test_staff_records_payment(self):
        due = self.make_supplier_due(total="1000")
        self.client.force_authenticate(user=self.staff_a)

        response = self.client.post(
            "/api/v1/due-payments/",
            {
                "due_type": "supplier",
                "due_id": str(due.id),
                "amount": "400",
                "payment_date": "2026-03-01",
                "payment_method": "bank_transfer",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["payment"]["user"], str(self.staff_a.id))
        self.assertEqual(data["payment"]["branch"], str(self.branch_a.id))
        self.assertEqual(data["due"]["paid_amount"], "400.00")
        self.assertEqual(data["due"]["status"], "partial")

        overpay = self.client.post(
            "/api/v1/due-payments/",
            {"due_type": "supplier", "due_id": str(due.id), "amount": "600.01", "payment_date": "2026-03-02"},
            format="json",
        )
        self.assertEqual(overpay.status_code, 400)
        self.assertEqual(overpay.json()["code"], "exceeds_remaining")
        self.assertEqual(DuePayment.objects.count(), 1)

    def test_bulk_payments_partial_failure_is_207(self):
        due = self.make_supplier_due(total="100")
        self.client.force_authenticate(user=self.staff_a)

        response = self.client.post(
            "/api/v1/due-payments/bulk/",
            {
                "payments": [
                    {"due_type": "supplier", "due_id": str(due.id), "amount": "70", "payment_date": "2026-03-01"},
                    {"due_type": "supplier", "due_id": str(due.id), "amount": "70", "payment_date": "2026-03-01"},
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 207)
        payload = response.json()
        self.assertEqual(payload["meta"], {"total": 2, "succeeded": 1, "failed": 1})
        self.assertTrue(payload["data"][0]["success"])
        self.assertEqual(payload["data"][1]["code"], "exceeds_remaining")

        failed = self.client.post(
            "/api/v1/due-payments/bulk/",
            {"payments": [{"due_type": "supplier", "due_id": str(due.id), "amount": "31", "payment_date": "2026-03-01"}]},
            format="json",
        )
        self.assertEqual(failed.status_code, 400)
        self.assertEqual(failed.json()["code"], "bulk_payment_failed")

    def test_payment_update_and_delete_need_admin(self):
        due = self.make_supplier_due(total="1000")
        payment, _ = payments.add_payment(
            due_type="supplier",
            due_id=due.id,
            amount="400",
            payment_date="2026-03-01",
            branch_id=self.branch_a.id,
        )
        self.client.force_authenticate(user=self.staff_a)

        self.assertEqual(self.client.patch(f"/api/v1/due-payments/{payment.id}/", {"amount": "500"}, format="json").status_code, 403)
        self.assertEqual(
            self.client.delete(f"/api/v1/due-payments/{payment.id}/", {"admin_password": "pass1234"}, format="json").status_code,
            403,
        )

        self.client.force_authenticate(user=self.admin_a)
        updated = self.client.patch(f"/api/v1/due-payments/{payment.id}/", {"amount": "500"}, format="json")
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["data"]["due"]["paid_amount"], "500.00")

        wrong = self.client.delete(f"/api/v1/due-payments/{payment.id}/", {"admin_password": "wrong"}, format="json")
        self.assertEqual(wrong.status_code, 403)
        self.assertTrue(DuePayment.objects.filter(id=payment.id).exists())

        deleted = self.client.delete(f"/api/v1/due-payments/{payment.id}/", {"admin_password": "pass1234"}, format="json")
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.json()["data"]["due"]["paid_amount"], "0.00")
        self.assertEqual(deleted.json()["data"]["due"]["status"], "pending")
        self.assertTrue(AuditLog.objects.filter(action="due_payment.delete", entity_id=payment.id).exists())

    def test_payment_list_and_summary_endpoints(self):
        due = self.make_supplier_due(total="1000")
        other = self.make_supplier_due(total="1000", branch=self.branch_b)
        payments.add_payment(due_type="supplier", due_id=due.id, amount="100", payment_date="2026-03-01")
        payments.add_payment(due_type="supplier", due_id=other.id, amount="200", payment_date="2026-03-01")
        self.client.force_authenticate(user=self.staff_a)

        listing = self.client.get("/api/v1/due-payments/").json()["data"]
        self.assertEqual(listing["count"], 1)
        self.assertEqual(listing["results"][0]["amount"], "100.00")

        summary = self.client.get("/api/v1/due-payments/summary/").json()["data"]
        self.assertEqual(summary["totals"], {"payment_count": 1, "total_amount": "100.00"})

        bad_date = self.client.get("/api/v1/due-payments/", {"date_from": "March"})
        self.assertEqual(bad_date.status_code, 400)
