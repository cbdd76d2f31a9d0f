from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

from common.exceptions import ExceedsRemaining, InvalidAmount, LedgerValidationError
from dues.models import Due

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, field="amount"):
    if value is None or value == "":
        raise LedgerValidationError(errors={field: "This field is required."})
    try:
        return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise LedgerValidationError(errors={field: "A valid number is required."})


def compute_remaining(total, paid):
    return to_money(total, "total_amount") - to_money(paid, "paid_amount")


def derive_status(total, paid, due_date=None, today=None):
    """Status implied by the amounts, optionally relabelled as overdue.

    Overdue is only reported when both ``due_date`` and ``today`` are given, so
    calls that persist a status never store it.
    """
    if compute_remaining(total, paid) <= 0:
        return Due.Status.PAID
    if due_date is not None and today is not None and due_date < today:
        return Due.Status.OVERDUE
    if to_money(paid, "paid_amount") > 0:
        return Due.Status.PARTIAL
    return Due.Status.PENDING


def effective_status(due, today=None):
    if due.status == Due.Status.CANCELLED:
        return Due.Status.CANCELLED
    return derive_status(due.total_amount, due.paid_amount, due.due_date, today or timezone.localdate())


def validate_payment_amount(amount, remaining):
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidAmount()
    if amount > to_money(remaining, "remaining_amount"):
        raise ExceedsRemaining(
            errors={"amount": str(amount), "remaining_amount": str(to_money(remaining, "remaining_amount"))},
        )
    return amount
