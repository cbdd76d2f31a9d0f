import datetime
import logging

from django.db import transaction
from django.db.models import Count, Sum

from common.exceptions import DomainError, InvalidAmount, LedgerValidationError, RecordNotFound, storage_errors
from dues.amounts import ZERO, to_money
from dues.ledger import DueRef, get_ledger
from dues.models import DuePayment

logger = logging.getLogger("dues.payments")

MAX_BULK_PAYMENTS = 100


def _parse_payment_date(value):
    if value in (None, ""):
        raise LedgerValidationError(errors={"payment_date": "This field is required."})
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise LedgerValidationError(errors={"payment_date": "Date must be in YYYY-MM-DD format."})


def _validate_method(value):
    if value not in DuePayment.Method.values:
        raise LedgerValidationError(errors={"payment_method": f"Must be one of: {', '.join(DuePayment.Method.values)}."})
    return value


def _positive_amount(value):
    amount = to_money(value)
    if amount <= 0:
        raise InvalidAmount()
    return amount


def add_payment(
    *,
    due_type,
    due_id,
    amount,
    payment_date,
    user_id=None,
    branch_id=None,
    payment_method=DuePayment.Method.CASH,
    description="",
    caller=None,
):
    """Record a payment and apply it to its due in one transaction."""
    if not due_id:
        raise LedgerValidationError(errors={"due_id": "This field is required."})
    ref = DueRef(due_type, due_id)
    ledger = ref.ledger
    amount = _positive_amount(amount)
    payment_date = _parse_payment_date(payment_date)
    payment_method = _validate_method(payment_method or DuePayment.Method.CASH)

    due = ref.resolve(caller=caller)
    with storage_errors("due_payment.create"), transaction.atomic():
        due = ledger.apply_payment(due.pk, amount)
        payment = DuePayment.objects.create(
            due_type=ledger.due_type,
            due_id=due.pk,
            amount=amount,
            payment_date=payment_date,
            payment_method=payment_method,
            user_id=user_id,
            branch_id=branch_id or due.branch_id,
            description=description or "",
        )

    logger.info(
        "due_payment_created",
        extra={
            "payment_id": str(payment.id),
            "due_type": ledger.due_type,
            "due_id": str(due.pk),
            "amount": str(amount),
            "branch_id": str(payment.branch_id),
        },
    )
    return payment, due


def get_payment(payment_id, caller=None):
    payment = DuePayment.objects.select_related("user", "branch").filter(pk=payment_id).first()
    if payment is None or (caller is not None and not caller.can_access_branch(payment.branch_id)):
        raise RecordNotFound("Payment not found.")
    return payment


def _lock_payment(payment_id, caller=None):
    payment = DuePayment.objects.select_for_update().filter(pk=payment_id).first()
    if payment is None or (caller is not None and not caller.can_access_branch(payment.branch_id)):
        raise RecordNotFound("Payment not found.")
    return payment


def update_payment(payment_id, *, amount=None, payment_date=None, payment_method=None, description=None, caller=None):
    """Edit a payment; an amount change moves the due by the difference only."""
    with storage_errors("due_payment.update"), transaction.atomic():
        payment = _lock_payment(payment_id, caller)
        ledger = get_ledger(payment.due_type)
        due = None

        update_fields = []
        if amount is not None:
            new_amount = _positive_amount(amount)
            delta = new_amount - payment.amount
            if delta:
                due = ledger.apply_payment(payment.due_id, delta)
                payment.amount = new_amount
                update_fields.append("amount")
        if payment_date is not None:
            payment.payment_date = _parse_payment_date(payment_date)
            update_fields.append("payment_date")
        if payment_method is not None:
            payment.payment_method = _validate_method(payment_method)
            update_fields.append("payment_method")
        if description is not None:
            payment.description = description
            update_fields.append("description")

        if update_fields:
            payment.save(update_fields=[*update_fields, "updated_at"])
        if due is None:
            due = ledger.get(payment.due_id)

    logger.info(
        "due_payment_updated",
        extra={
            "payment_id": str(payment.id),
            "due_type": payment.due_type,
            "due_id": str(payment.due_id),
            "amount": str(payment.amount),
        },
    )
    return payment, due


def delete_payment(payment_id, caller=None):
    """Reverse a payment's effect on its due, then remove it."""
    with storage_errors("due_payment.delete"), transaction.atomic():
        payment = _lock_payment(payment_id, caller)
        ledger = get_ledger(payment.due_type)
        due = ledger.apply_payment(payment.due_id, -payment.amount)
        payment.delete()

    logger.info(
        "due_payment_deleted",
        extra={
            "payment_id": str(payment_id),
            "due_type": ledger.due_type,
            "due_id": str(due.pk),
            "amount": str(payment.amount),
        },
    )
    return due


def list_payments(*, branch_id=None, user_id=None, due_type=None, due_id=None, date_from=None, date_to=None):
    qs = DuePayment.objects.select_related("user", "branch")
    if branch_id:
        qs = qs.filter(branch_id=branch_id)
    if user_id:
        qs = qs.filter(user_id=user_id)
    if due_type:
        qs = qs.filter(due_type=get_ledger(due_type).due_type)
    if due_id:
        qs = qs.filter(due_id=due_id)
    if date_from:
        qs = qs.filter(payment_date__gte=date_from)
    if date_to:
        qs = qs.filter(payment_date__lte=date_to)
    return qs.order_by("-payment_date", "-created_at")


def payments_summary(*, branch_id=None, date_from=None, date_to=None):
    qs = list_payments(branch_id=branch_id, date_from=date_from, date_to=date_to)
    rows = (
        qs.order_by()
        .values("due_type", "payment_method")
        .annotate(
            payment_count=Count("id"),
            total_amount=Sum("amount"),
            due_count=Count("due_id", distinct=True),
            user_count=Count("user", distinct=True),
        )
        .order_by("due_type", "payment_method")
    )

    groups = []
    totals = {"payment_count": 0, "total_amount": ZERO}
    for row in rows:
        groups.append(
            {
                "due_type": row["due_type"],
                "payment_method": row["payment_method"],
                "payment_count": row["payment_count"],
                "total_amount": row["total_amount"] or ZERO,
                "due_count": row["due_count"],
                "user_count": row["user_count"],
            }
        )
        totals["payment_count"] += row["payment_count"]
        totals["total_amount"] += row["total_amount"] or ZERO
    return {"groups": groups, "totals": totals}


def add_payments_bulk(entries, *, user_id=None, branch_id=None, caller=None):
    """Record several payments, each in its own transaction.

    Returns one ``(index, payment, error)`` tuple per entry; a failing entry does
    not undo the ones that succeeded.
    """
    if not isinstance(entries, (list, tuple)) or not entries:
        raise LedgerValidationError(errors={"payments": "Provide a non-empty list of payments."})
    if len(entries) > MAX_BULK_PAYMENTS:
        raise LedgerValidationError(errors={"payments": f"At most {MAX_BULK_PAYMENTS} payments per request."})

    results = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            results.append((index, None, LedgerValidationError(errors={"payment": "Each entry must be an object."})))
            continue
        try:
            payment, _ = add_payment(
                due_type=entry.get("due_type"),
                due_id=entry.get("due_id"),
                amount=entry.get("amount"),
                payment_date=entry.get("payment_date"),
                payment_method=entry.get("payment_method") or DuePayment.Method.CASH,
                description=entry.get("description") or "",
                user_id=user_id,
                branch_id=branch_id,
                caller=caller,
            )
        except DomainError as exc:
            logger.warning(
                "due_payment_bulk_entry_failed",
                extra={"due_type": entry.get("due_type"), "due_id": str(entry.get("due_id")), "status": exc.code},
            )
            results.append((index, None, exc))
        else:
            results.append((index, payment, None))
    return results
