import json
import logging
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError
from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase, TestCase
from rest_framework.exceptions import PermissionDenied
from rest_framework.test import APIClient

from common.audit import create_audit_log
from common.exceptions import ExceedsRemaining, custom_exception_handler
from common.logging import JsonFormatter, RequestIdFilter, RequestLogMiddleware, current_request_id
from common.permissions import CallerContext, caller_context_for, user_has_capability
from core.models import AuditLog, Branch, User
from dues.models import CustomerDue, DuePayment, SupplierDue
from inventory.models import ProductStock, StockMovement


class CallerContextTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="CA", name="Core A")
        self.branch_b = Branch.objects.create(code="CB", name="Core B")

    def test_super_admin_scope_follows_requested_branch(self):
        caller = CallerContext(user_id=None, role=User.Role.SUPER_ADMIN)

        self.assertIsNone(caller.scope_branch_id())
        self.assertEqual(caller.scope_branch_id(self.branch_b.id), self.branch_b.id)
        self.assertTrue(caller.can_access_branch(self.branch_a.id))

    def test_staff_is_pinned_to_own_branch(self):
        caller = CallerContext(user_id=None, role=User.Role.STAFF, branch_id=self.branch_a.id)

        self.assertEqual(caller.scope_branch_id(self.branch_b.id), self.branch_a.id)
        self.assertTrue(caller.can_access_branch(self.branch_b.id, self.branch_a.id))
        self.assertFalse(caller.can_access_branch(self.branch_b.id))

    def test_superuser_resolves_to_super_admin(self):
        root = self.user_model.objects.create_superuser(username="root", password="pass1234", email="root@example.com")

        caller = caller_context_for(root)

        self.assertEqual(caller.role, User.Role.SUPER_ADMIN)
        self.assertTrue(caller.is_super_admin)

    def test_user_without_branch_is_rejected(self):
        orphan = self.user_model.objects.create_user(username="orphan", password="pass1234", role=User.Role.STAFF)

        with self.assertRaises(PermissionDenied):
            caller_context_for(orphan)

    def test_capability_matrix(self):
        staff = self.user_model.objects.create_user(username="staff", password="pass1234", branch=self.branch_a)
        admin = self.user_model.objects.create_user(
            username="badmin",
            password="pass1234",
            branch=self.branch_a,
            role=User.Role.BRANCH_ADMIN,
        )

        self.assertTrue(user_has_capability(staff, "dues.payment.create"))
        self.assertFalse(user_has_capability(staff, "dues.payment.manage"))
        self.assertTrue(user_has_capability(admin, "dues.payment.manage"))
        self.assertFalse(user_has_capability(admin, "unknown.capability"))


class ExceptionEnvelopeTests(SimpleTestCase):
    def test_domain_error_renders_code_and_status(self):
        response = custom_exception_handler(ExceedsRemaining(errors={"amount": "1.00"}), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.data,
            {
                "success": False,
                "code": "exceeds_remaining",
                "message": "Payment amount exceeds the remaining due amount.",
                "errors": {"amount": "1.00"},
                "status": 400,
            },
        )

    def test_database_error_text_is_not_leaked(self):
        with self.assertLogs("common.exceptions", level="ERROR"):
            response = custom_exception_handler(DatabaseError("relation secret_table does not exist"), {})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["code"], "storage_error")
        self.assertNotIn("secret_table", response.data["message"])


class AuditLogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="AA", name="Audit A")
        self.branch_b = Branch.objects.create(code="AB", name="Audit B")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            branch=self.branch_a,
            role=User.Role.BRANCH_ADMIN,
        )
        self.staff = self.user_model.objects.create_user(username="audit-staff", password="pass1234", branch=self.branch_a)

    def test_branch_admin_only_sees_own_branch_logs(self):
        own = create_audit_log(actor=self.admin, branch_id=self.branch_a.id, action="due.create", entity="supplier_due")
        create_audit_log(actor=None, branch_id=self.branch_b.id, action="due.create", entity="supplier_due")
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        ids = [row["id"] for row in payload["data"]["results"]]
        self.assertEqual(ids, [str(own.id)])

    def test_staff_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_audit_logs_are_read_only(self):
        log = create_audit_log(actor=self.admin, branch_id=self.branch_a.id, action="due.cancel", entity="branch_due")
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")

        self.assertEqual(response.status_code, 405)
        self.assertEqual(AuditLog.objects.get(id=log.id).action, "due.cancel")


class HealthTests(TestCase):
    def test_healthz_echoes_request_id(self):
        response = APIClient().get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-123")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "req-123"})
        self.assertEqual(response["X-Request-ID"], "req-123")

    def test_readyz_hides_database_error_detail(self):
        with patch("core.views.connections") as mocked:
            mocked.__getitem__.return_value.cursor.side_effect = DatabaseError("password authentication failed")
            with self.assertLogs("core.views", level="ERROR"):
                response = APIClient().get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["status"], "error")
        self.assertNotIn("detail", response.json())


class SeedDemoDataCommandTests(TestCase):
    def test_seed_is_repeatable(self):
        out = StringIO()

        call_command("seed_demo_data", stdout=out)
        call_command("seed_demo_data", stdout=out)

        self.assertIn("Demo data seeded successfully.", out.getvalue())
        self.assertIn("already exist", out.getvalue())
        self.assertEqual(Branch.objects.filter(code__in=["MAIN", "EAST"]).count(), 2)
        self.assertEqual(StockMovement.objects.count(), 3)
        self.assertEqual(DuePayment.objects.count(), 1)

        supplier_due = SupplierDue.objects.get()
        self.assertEqual(supplier_due.total_amount, Decimal("5400.00"))
        self.assertEqual(supplier_due.paid_amount, Decimal("2000.00"))
        self.assertEqual(CustomerDue.objects.count(), 1)

        main = Branch.objects.get(code="MAIN")
        self.assertEqual(ProductStock.objects.get(branch=main).quantity, Decimal("265.00"))


class StructuredLoggingTests(SimpleTestCase):
    def make_record(self, **extra):
        record = logging.LogRecord("dues.ledger", logging.INFO, __file__, 1, "due_created", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_formatter_includes_ledger_fields(self):
        record = self.make_record(due_type="supplier", due_id="d-1", amount="250.00", unrelated="x")

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "due_created")
        self.assertEqual(payload["due_type"], "supplier")
        self.assertEqual(payload["amount"], "250.00")
        self.assertNotIn("unrelated", payload)

    def test_request_id_reaches_service_loggers(self):
        captured = {}

        def view(request):
            record = self.make_record()
            RequestIdFilter().filter(record)
            captured["request_id"] = record.request_id
            return HttpResponse("ok")

        middleware = RequestLogMiddleware(view)
        with self.assertLogs("api.request", level="INFO"):
            response = middleware(RequestFactory().get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-789"))

        self.assertEqual(captured["request_id"], "req-789")
        self.assertEqual(response["X-Request-ID"], "req-789")
        self.assertIsNone(current_request_id())

    def test_unknown_audit_action_is_rejected(self):
        with self.assertRaises(ValueError):
            create_audit_log(action="due.archive", entity="supplier_due")
