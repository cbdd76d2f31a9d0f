import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Case, CharField, Count, DecimalField, F, Q, Sum, Value, When
from django.db.models.functions import Coalesce
from django.utils import timezone

from common.exceptions import (
    AlreadyCancelled,
    ConcurrentModification,
    DuplicateDue,
    InvalidDueState,
    InvalidReference,
    LedgerValidationError,
    RecordNotFound,
)
from core.models import Branch
from dues.amounts import ZERO, compute_remaining, derive_status, to_money, validate_payment_amount
from dues.models import BranchDue, CustomerDue, Due, DuePayment, SupplierDue
from inventory.models import StockMovement

logger = logging.getLogger("dues.ledger")

MONEY_FIELD = DecimalField(max_digits=14, decimal_places=2)


class DueLedger:
    """Persistence and invariants for one due table.

    One instance exists per due type (see ``LEDGERS``); all three share the same
    amount and status rules and differ only in the counterparty relation.
    """

    def __init__(self, due_type, model, requires_transfer_movement=False):
        self.due_type = due_type
        self.model = model
        self.counterparty_field = model.counterparty_field
        self.requires_transfer_movement = requires_transfer_movement

    def __repr__(self):
        return f"DueLedger({self.due_type})"

    @property
    def counterparty_model(self):
        return self.model._meta.get_field(self.counterparty_field).related_model

    def queryset(self):
        return self.model.objects.select_related(self.counterparty_field, "branch", "stock_movement")

    def branch_ids_for(self, due):
        """Branches allowed to see ``due``."""
        if self.model is BranchDue:
            return (due.branch_id, due.counterparty_branch_id)
        return (due.branch_id,)

    def _branch_q(self, branch_id):
        q = Q(branch_id=branch_id)
        if self.model is BranchDue:
            q |= Q(counterparty_branch_id=branch_id)
        return q

    def _validate_references(self, counterparty_id, branch_id, stock_movement_id):
        counterparty = self.counterparty_model.objects.filter(pk=counterparty_id, is_active=True).first()
        if counterparty is None:
            raise InvalidReference(errors={self.counterparty_field: "Counterparty does not exist or is inactive."})

        if not Branch.objects.filter(pk=branch_id, is_active=True).exists():
            raise InvalidReference(errors={"branch_id": "Branch does not exist or is inactive."})

        if self.model is BranchDue and str(counterparty_id) == str(branch_id):
            raise LedgerValidationError(errors={self.counterparty_field: "Counterparty branch must differ from the branch."})

        movement = StockMovement.objects.filter(pk=stock_movement_id).first()
        if movement is None or movement.status == StockMovement.Status.CANCELLED:
            raise InvalidReference(errors={"stock_movement_id": "Stock movement does not exist or is cancelled."})
        if self.requires_transfer_movement and not movement.is_transfer:
            raise InvalidReference(errors={"stock_movement_id": "Branch dues must originate from a transfer movement."})

    def create(
        self,
        *,
        counterparty_id,
        branch_id,
        stock_movement_id,
        due_date,
        total_amount,
        paid_amount=0,
        due_type="",
        description="",
    ):
        errors = {}
        if not counterparty_id:
            errors[self.counterparty_field] = "This field is required."
        if not branch_id:
            errors["branch_id"] = "This field is required."
        if not stock_movement_id:
            errors["stock_movement_id"] = "This field is required."
        if due_date is None:
            errors["due_date"] = "This field is required."
        if total_amount in (None, ""):
            errors["total_amount"] = "This field is required."
        if errors:
            raise LedgerValidationError(errors=errors)

        total = to_money(total_amount, "total_amount")
        paid = to_money(paid_amount or 0, "paid_amount")
        if total <= 0:
            raise LedgerValidationError(errors={"total_amount": "Must be greater than zero."})
        if paid < 0:
            raise LedgerValidationError(errors={"paid_amount": "Must not be negative."})
        if paid > total:
            raise LedgerValidationError(errors={"paid_amount": "Must not exceed the total amount."})

        self._validate_references(counterparty_id, branch_id, stock_movement_id)

        with transaction.atomic():
            if self.get_by_stock_movement(stock_movement_id) is not None:
                raise DuplicateDue()
            try:
                with transaction.atomic():
                    due = self.model.objects.create(
                        **{f"{self.counterparty_field}_id": counterparty_id},
                        branch_id=branch_id,
                        stock_movement_id=stock_movement_id,
                        due_date=due_date,
                        total_amount=total,
                        paid_amount=paid,
                        remaining_amount=compute_remaining(total, paid),
                        status=derive_status(total, paid),
                        due_type=due_type or "",
                        description=description or "",
                    )
            except IntegrityError:
                raise DuplicateDue()

        logger.info(
            "due_created",
            extra={
                "due_type": self.due_type,
                "due_id": str(due.id),
                "branch_id": str(branch_id),
                "stock_movement_id": str(stock_movement_id),
                "amount": str(total),
            },
        )
        return due

    def get(self, due_id, caller=None):
        due = self.queryset().filter(pk=due_id).first()
        if due is None or (caller is not None and not caller.can_access_branch(*self.branch_ids_for(due))):
            raise RecordNotFound(f"{self.due_type.capitalize()} due not found.")
        return due

    def get_by_stock_movement(self, stock_movement_id):
        return self.queryset().filter(stock_movement_id=stock_movement_id).exclude(status=Due.Status.CANCELLED).first()

    def _overdue_q(self, today):
        return Q(status__in=Due.OPEN_STATUSES, due_date__lt=today)

    def list(self, *, counterparty_id=None, branch_id=None, status=None, overdue=False, today=None):
        today = today or timezone.localdate()
        qs = self.queryset()
        if counterparty_id:
            qs = qs.filter(**{f"{self.counterparty_field}_id": counterparty_id})
        if branch_id:
            qs = qs.filter(self._branch_q(branch_id))

        if overdue or status == Due.Status.OVERDUE:
            qs = qs.filter(self._overdue_q(today))
        elif status in Due.OPEN_STATUSES:
            # Past-due rows are reported as overdue, not under their stored label.
            qs = qs.filter(status=status, due_date__gte=today)
        elif status:
            if status not in Due.Status.values:
                raise LedgerValidationError(errors={"status": f"Must be one of: {', '.join(Due.Status.values)}."})
            qs = qs.filter(status=status)

        return qs.order_by("due_date", "-created_at")

    def overdue(self, *, branch_id=None, today=None):
        return self.list(branch_id=branch_id, overdue=True, today=today)

    def _fetch_for_update(self, due_id):
        due = self.model.objects.select_for_update().filter(pk=due_id).first()
        if due is None:
            raise RecordNotFound(f"{self.due_type.capitalize()} due not found.")
        return due

    def _compare_and_swap(self, due_id, compute_changes):
        """Write the changes ``compute_changes(current)`` returns, guarded by ``version``.

        The row is locked before computing, and the update only lands when the
        version read is still current. A lost race re-reads and recomputes, so a
        stale remaining amount is never the basis of a write.
        """
        attempts = max(1, int(getattr(settings, "DUE_PAYMENT_CAS_ATTEMPTS", 3)))
        with transaction.atomic():
            for attempt in range(1, attempts + 1):
                current = self._fetch_for_update(due_id)
                changes = compute_changes(current)
                updated = self.model.objects.filter(pk=current.pk, version=current.version).update(
                    version=F("version") + 1,
                    updated_at=timezone.now(),
                    **changes,
                )
                if updated:
                    for field, value in changes.items():
                        setattr(current, field, value)
                    current.version += 1
                    return current
                logger.warning(
                    "due_version_conflict",
                    extra={"due_type": self.due_type, "due_id": str(due_id), "status": f"attempt {attempt}/{attempts}"},
                )
        raise ConcurrentModification()

    def _next_payment_state(self, due, delta):
        if delta > 0 and due.status == Due.Status.CANCELLED:
            raise InvalidDueState("Payments cannot be applied to a cancelled due.")

        total = to_money(due.total_amount)
        if delta > 0:
            validate_payment_amount(delta, compute_remaining(total, due.paid_amount))

        new_paid = to_money(due.paid_amount) + delta
        if new_paid < 0:
            raise LedgerValidationError(
                "Reversal exceeds the amount paid on this due.",
                errors={"amount": str(delta), "paid_amount": str(due.paid_amount)},
            )
        if new_paid >= total:
            new_paid = total

        if due.status == Due.Status.CANCELLED:
            new_status = Due.Status.CANCELLED
        else:
            new_status = derive_status(total, new_paid)
        return {
            "paid_amount": new_paid,
            "remaining_amount": max(compute_remaining(total, new_paid), ZERO),
            "status": new_status,
        }

    def apply_payment(self, due_id, delta_amount):
        """Apply a signed amount to ``paid_amount``.

        Positive deltas are payments and may not exceed the remaining amount;
        negative deltas reverse earlier payments.
        """
        delta = to_money(delta_amount)
        if delta == 0:
            raise LedgerValidationError(errors={"amount": "Amount must not be zero."})

        due = self._compare_and_swap(due_id, lambda current: self._next_payment_state(current, delta))
        logger.info(
            "due_payment_applied",
            extra={
                "due_type": self.due_type,
                "due_id": str(due.id),
                "amount": str(delta),
                "status": due.status,
            },
        )
        return due

    def resync_from_movement(self, due, total_amount, paid_delta=Decimal("0")):
        """Overwrite the total from an edited movement and shift paid by ``paid_delta``."""
        new_total = to_money(total_amount, "total_amount")
        paid_delta = to_money(paid_delta, "paid_amount")
        if new_total <= 0:
            raise LedgerValidationError(errors={"total_amount": "Must be greater than zero."})

        def compute_changes(current):
            new_paid = to_money(current.paid_amount) + paid_delta
            if new_paid < 0:
                raise LedgerValidationError(errors={"paid_amount": "Paid amount would become negative."})
            if new_paid > new_total:
                raise LedgerValidationError(
                    "Amount already paid exceeds the new total.",
                    errors={"total_amount": str(new_total), "paid_amount": str(new_paid)},
                )
            status = Due.Status.CANCELLED if current.status == Due.Status.CANCELLED else derive_status(new_total, new_paid)
            return {
                "total_amount": new_total,
                "paid_amount": new_paid,
                "remaining_amount": compute_remaining(new_total, new_paid),
                "status": status,
            }

        resynced = self._compare_and_swap(due.pk, compute_changes)
        logger.info(
            "due_resynced",
            extra={"due_type": self.due_type, "due_id": str(resynced.id), "amount": str(new_total)},
        )
        return resynced

    def cancel(self, due_id):
        with transaction.atomic():
            due = self._fetch_for_update(due_id)
            if due.status == Due.Status.CANCELLED:
                raise AlreadyCancelled("Due is already cancelled.")
            if due.status == Due.Status.PAID:
                raise InvalidDueState("Paid dues cannot be cancelled.")

            updated = (
                self.model.objects.filter(pk=due.pk)
                .exclude(status__in=[Due.Status.CANCELLED, Due.Status.PAID])
                .update(status=Due.Status.CANCELLED, version=F("version") + 1, updated_at=timezone.now())
            )
            if not updated:
                raise AlreadyCancelled("Due is already cancelled.")

        due.status = Due.Status.CANCELLED
        due.version += 1
        logger.info("due_cancelled", extra={"due_type": self.due_type, "due_id": str(due.id)})
        return due

    def payments_for(self, due_id):
        return DuePayment.objects.filter(due_type=self.due_type, due_id=due_id)

    def delete(self, due_id):
        with transaction.atomic():
            due = self._fetch_for_update(due_id)
            deleted_payments, _ = self.payments_for(due.pk).delete()
            due.delete()

        logger.info(
            "due_deleted",
            extra={"due_type": self.due_type, "due_id": str(due_id), "status": f"payments_deleted={deleted_payments}"},
        )
        return deleted_payments

    def summary(self, *, branch_id=None, today=None):
        today = today or timezone.localdate()
        qs = self.model.objects.all()
        if branch_id:
            qs = qs.filter(self._branch_q(branch_id))

        effective = Case(
            When(self._overdue_q(today), then=Value(Due.Status.OVERDUE)),
            default=F("status"),
            output_field=CharField(),
        )
        rows = (
            qs.annotate(effective_status=effective)
            .values("effective_status")
            .annotate(
                count=Count("id"),
                total_amount=Coalesce(Sum("total_amount"), Value(ZERO), output_field=MONEY_FIELD),
                paid_amount=Coalesce(Sum("paid_amount"), Value(ZERO), output_field=MONEY_FIELD),
                remaining_amount=Coalesce(Sum("remaining_amount"), Value(ZERO), output_field=MONEY_FIELD),
            )
            .order_by("effective_status")
        )

        by_status = {
            value: {"count": 0, "total_amount": ZERO, "paid_amount": ZERO, "remaining_amount": ZERO}
            for value in Due.Status.values
        }
        totals = {"count": 0, "total_amount": ZERO, "paid_amount": ZERO, "remaining_amount": ZERO}
        for row in rows:
            bucket = by_status[row["effective_status"]]
            for key in totals:
                bucket[key] = row[key]
                # Cancelled dues are no longer owed and stay out of the grand totals.
                if row["effective_status"] != Due.Status.CANCELLED:
                    totals[key] += row[key]

        return {"due_type": self.due_type, "by_status": by_status, "totals": totals}


LEDGERS = {
    DuePayment.DueType.SUPPLIER: DueLedger(DuePayment.DueType.SUPPLIER, SupplierDue),
    DuePayment.DueType.BRANCH: DueLedger(DuePayment.DueType.BRANCH, BranchDue, requires_transfer_movement=True),
    DuePayment.DueType.CUSTOMER: DueLedger(DuePayment.DueType.CUSTOMER, CustomerDue),
}


def get_ledger(due_type):
    ledger = LEDGERS.get(due_type)
    if ledger is None:
        raise LedgerValidationError(errors={"due_type": f"Must be one of: {', '.join(LEDGERS)}."})
    return ledger


@dataclass(frozen=True)
class DueRef:
    """Points at one due row in whichever table ``due_type`` names."""

    due_type: str
    due_id: object

    def __post_init__(self):
        try:
            uuid.UUID(str(self.due_id))
        except ValueError:
            raise LedgerValidationError(errors={"due_id": "Must be a valid UUID."})

    @property
    def ledger(self):
        return get_ledger(self.due_type)

    def resolve(self, caller=None):
        return self.ledger.get(self.due_id, caller=caller)
