import datetime
import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Avg, Count, Sum
from django.utils import timezone

from common.exceptions import (
    AlreadyCancelled,
    InsufficientStock,
    InvalidDueState,
    InvalidReference,
    LedgerValidationError,
    RecordNotFound,
    storage_errors,
)
from core.models import Branch
from dues.amounts import ZERO, to_money
from dues.ledger import LEDGERS
from dues.models import Due, DuePayment
from inventory.models import Product, ProductStock, StockMovement, Supplier

logger = logging.getLogger("inventory.movements")

QUANTITY_ZERO = Decimal("0.00")
IMMUTABLE_FIELDS = ("movement_type", "product_id", "branch_id", "supplier_id", "reference_branch_id")


def _supplier_term():
    return timedelta(days=int(getattr(settings, "SUPPLIER_DUE_TERM_DAYS", 30)))


def _branch_term():
    return timedelta(days=int(getattr(settings, "BRANCH_DUE_TERM_DAYS", 15)))


def _parse_date(value, field="date"):
    if value in (None, ""):
        return timezone.localdate()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise LedgerValidationError(errors={field: "Date must be in YYYY-MM-DD format."})


def _locked_stock(product_id, branch_id):
    lookup = {"product_id": product_id, "branch_id": branch_id}
    stock = ProductStock.objects.select_for_update().filter(**lookup).first()
    if stock is not None:
        return stock
    try:
        with transaction.atomic():
            return ProductStock.objects.create(quantity=QUANTITY_ZERO, **lookup)
    except IntegrityError:
        # Another transaction inserted the row first; wait for its lock.
        return ProductStock.objects.select_for_update().get(**lookup)


def _add_stock(product_id, branch_id, quantity):
    stock = _locked_stock(product_id, branch_id)
    if stock.quantity + quantity < 0:
        raise InsufficientStock(
            errors={
                "branch_id": str(branch_id),
                "available": str(stock.quantity),
                "required": str(-quantity),
            }
        )
    stock.quantity += quantity
    stock.save(update_fields=["quantity", "updated_at"])
    return stock


def apply_stock_effect(movement):
    kind = movement.movement_type
    Types = StockMovement.MovementType
    if kind in (Types.ARRIVAL, Types.TRANSFER_IN):
        _add_stock(movement.product_id, movement.branch_id, movement.quantity)
    elif kind == Types.DISPATCH:
        _add_stock(movement.product_id, movement.branch_id, -movement.quantity)
    elif kind == Types.TRANSFER_OUT:
        _add_stock(movement.product_id, movement.branch_id, -movement.quantity)
        _add_stock(movement.product_id, movement.reference_branch_id, movement.quantity)
    elif kind == Types.ADJUSTMENT:
        stock = _locked_stock(movement.product_id, movement.branch_id)
        movement.quantity_before = stock.quantity
        stock.quantity = movement.quantity
        stock.save(update_fields=["quantity", "updated_at"])


def revert_stock_effect(movement):
    kind = movement.movement_type
    Types = StockMovement.MovementType
    if kind in (Types.ARRIVAL, Types.TRANSFER_IN):
        _add_stock(movement.product_id, movement.branch_id, -movement.quantity)
    elif kind == Types.DISPATCH:
        _add_stock(movement.product_id, movement.branch_id, movement.quantity)
    elif kind == Types.TRANSFER_OUT:
        _add_stock(movement.product_id, movement.reference_branch_id, -movement.quantity)
        _add_stock(movement.product_id, movement.branch_id, movement.quantity)
    elif kind == Types.ADJUSTMENT and movement.quantity_before is not None:
        stock = _locked_stock(movement.product_id, movement.branch_id)
        stock.quantity = movement.quantity_before
        stock.save(update_fields=["quantity", "updated_at"])


def _due_plan(movement):
    """Which ledger an automatic due goes to for ``movement``, or ``None``."""
    Types = StockMovement.MovementType
    today = timezone.localdate()
    if movement.movement_type == Types.ARRIVAL and movement.supplier_id:
        return LEDGERS[DuePayment.DueType.SUPPLIER], {
            "counterparty_id": movement.supplier_id,
            "due_date": today + _supplier_term(),
            "due_type": "stock_purchase",
        }
    if movement.is_transfer and movement.reference_branch_id:
        return LEDGERS[DuePayment.DueType.BRANCH], {
            "counterparty_id": movement.reference_branch_id,
            "due_date": today + _branch_term(),
            "due_type": "receivable" if movement.movement_type == Types.TRANSFER_IN else "payable",
        }
    return None


def _create_movement_due(movement):
    plan = _due_plan(movement)
    if plan is None or not movement.auto_update_product:
        return None
    if movement.total_amount <= 0:
        logger.info(
            "movement_due_skipped_zero_total",
            extra={"stock_movement_id": str(movement.id), "movement_type": movement.movement_type},
        )
        return None

    ledger, params = plan
    return ledger.create(
        branch_id=movement.branch_id,
        stock_movement_id=movement.id,
        total_amount=movement.total_amount,
        paid_amount=movement.paid_amount,
        description=f"{movement.get_movement_type_display()} of {movement.quantity} x {movement.product.name}",
        **params,
    )


def _validate_amounts(quantity, unit_price, total_amount, paid_amount, movement_type):
    errors = {}
    if movement_type == StockMovement.MovementType.ADJUSTMENT:
        if quantity < 0:
            errors["quantity"] = "Adjusted quantity must not be negative."
    elif quantity <= 0:
        errors["quantity"] = "Must be greater than zero."
    if unit_price < 0:
        errors["unit_price_per_meter"] = "Must not be negative."
    if total_amount < 0:
        errors["total_amount"] = "Must not be negative."
    if paid_amount < 0:
        errors["paid_amount"] = "Must not be negative."
    elif paid_amount > total_amount:
        errors["paid_amount"] = "Must not exceed the total amount."
    if errors:
        raise LedgerValidationError(errors=errors)


def record_movement(data, *, user_id=None):
    """Record a movement, apply its stock effect and open its due, all or nothing."""
    errors = {}
    for field in ("movement_type", "product_id", "branch_id", "quantity"):
        if data.get(field) in (None, ""):
            errors[field] = "This field is required."
    if errors:
        raise LedgerValidationError(errors=errors)

    movement_type = data["movement_type"]
    if movement_type not in StockMovement.MovementType.values:
        raise LedgerValidationError(
            errors={"movement_type": f"Must be one of: {', '.join(StockMovement.MovementType.values)}."}
        )

    branch_id = data["branch_id"]
    reference_branch_id = data.get("reference_branch_id") or None
    supplier_id = data.get("supplier_id") or None

    if not Product.objects.filter(pk=data["product_id"], is_active=True).exists():
        raise InvalidReference(errors={"product_id": "Product does not exist or is inactive."})
    if not Branch.objects.filter(pk=branch_id, is_active=True).exists():
        raise InvalidReference(errors={"branch_id": "Branch does not exist or is inactive."})
    if movement_type in StockMovement.TRANSFER_TYPES:
        if not reference_branch_id:
            raise LedgerValidationError(errors={"reference_branch_id": "Required for transfer movements."})
        if str(reference_branch_id) == str(branch_id):
            raise LedgerValidationError(errors={"reference_branch_id": "Must differ from the branch."})
        if not Branch.objects.filter(pk=reference_branch_id, is_active=True).exists():
            raise InvalidReference(errors={"reference_branch_id": "Branch does not exist or is inactive."})
    if supplier_id and not Supplier.objects.filter(pk=supplier_id, is_active=True).exists():
        raise InvalidReference(errors={"supplier_id": "Supplier does not exist or is inactive."})

    quantity = to_money(data["quantity"], "quantity")
    unit_price = to_money(data.get("unit_price_per_meter") or 0, "unit_price_per_meter")
    if data.get("total_amount") not in (None, ""):
        total_amount = to_money(data["total_amount"], "total_amount")
    else:
        total_amount = to_money(quantity * unit_price, "total_amount")
    paid_amount = to_money(data.get("paid_amount") or 0, "paid_amount")
    _validate_amounts(quantity, unit_price, total_amount, paid_amount, movement_type)

    auto_update = data.get("auto_update_product")
    with storage_errors("stock_movement.create"), transaction.atomic():
        movement = StockMovement(
            movement_type=movement_type,
            product_id=data["product_id"],
            branch_id=branch_id,
            reference_branch_id=reference_branch_id,
            supplier_id=supplier_id,
            user_id=user_id,
            quantity=quantity,
            unit_price_per_meter=unit_price,
            total_amount=total_amount,
            paid_amount=paid_amount,
            remaining_amount=total_amount - paid_amount,
            date=_parse_date(data.get("date")),
            notes=data.get("notes") or "",
            auto_update_product=True if auto_update is None else bool(auto_update),
        )
        if movement.auto_update_product:
            apply_stock_effect(movement)
        movement.save()
        due = _create_movement_due(movement)

    logger.info(
        "stock_movement_recorded",
        extra={
            "stock_movement_id": str(movement.id),
            "movement_type": movement.movement_type,
            "branch_id": str(movement.branch_id),
            "amount": str(movement.total_amount),
            "due_id": str(due.id) if due else None,
        },
    )
    return movement, due


def _locked_movement(movement_id, caller=None):
    movement = StockMovement.objects.select_for_update().filter(pk=movement_id).first()
    if movement is None or (caller is not None and not caller.can_access_branch(movement.branch_id)):
        raise RecordNotFound("Stock movement not found.")
    return movement


def movement_dues(movement_id):
    found = []
    for ledger in LEDGERS.values():
        due = ledger.get_by_stock_movement(movement_id)
        if due is not None:
            found.append((ledger, due))
    return found


def _due_ever_opened(movement_id):
    """Whether any due row, cancelled ones included, references the movement."""
    return any(ledger.model.objects.filter(stock_movement_id=movement_id).exists() for ledger in LEDGERS.values())


def update_movement(movement_id, data, *, caller=None):
    """Edit quantities, prices, paid amount, date or notes of a completed movement.

    The prior stock effect is reverted before the new one is applied, and any
    due opened by the movement is resynced to the new total.
    """
    with storage_errors("stock_movement.update"), transaction.atomic():
        movement = _locked_movement(movement_id, caller)
        if movement.status == StockMovement.Status.CANCELLED:
            raise AlreadyCancelled("Cancelled movements cannot be updated.")

        errors = {}
        for field in IMMUTABLE_FIELDS:
            if field in data and data[field] not in (None, "") and str(data[field]) != str(getattr(movement, field)):
                errors[field] = "This field cannot be changed after recording."
        if errors:
            raise LedgerValidationError(errors=errors)

        quantity = to_money(data["quantity"], "quantity") if data.get("quantity") not in (None, "") else movement.quantity
        unit_price = (
            to_money(data["unit_price_per_meter"], "unit_price_per_meter")
            if data.get("unit_price_per_meter") not in (None, "")
            else movement.unit_price_per_meter
        )
        if data.get("total_amount") not in (None, ""):
            total_amount = to_money(data["total_amount"], "total_amount")
        elif quantity != movement.quantity or unit_price != movement.unit_price_per_meter:
            total_amount = to_money(quantity * unit_price, "total_amount")
        else:
            total_amount = movement.total_amount
        paid_amount = (
            to_money(data["paid_amount"], "paid_amount") if data.get("paid_amount") not in (None, "") else movement.paid_amount
        )
        _validate_amounts(quantity, unit_price, total_amount, paid_amount, movement.movement_type)

        paid_delta = paid_amount - movement.paid_amount
        if movement.stock_applied:
            revert_stock_effect(movement)
        movement.quantity = quantity
        movement.unit_price_per_meter = unit_price
        movement.total_amount = total_amount
        movement.paid_amount = paid_amount
        movement.remaining_amount = total_amount - paid_amount
        if "date" in data:
            movement.date = _parse_date(data.get("date"))
        if data.get("notes") is not None:
            movement.notes = data["notes"]
        if movement.stock_applied:
            apply_stock_effect(movement)
        movement.save()

        existing = movement_dues(movement.id)
        dues = [ledger.resync_from_movement(due, total_amount, paid_delta) for ledger, due in existing]
        if not existing and not _due_ever_opened(movement.id):
            created = _create_movement_due(movement)
            if created is not None:
                dues.append(created)

    logger.info(
        "stock_movement_updated",
        extra={
            "stock_movement_id": str(movement.id),
            "movement_type": movement.movement_type,
            "amount": str(movement.total_amount),
        },
    )
    return movement, dues


def cancel_movement(movement_id, *, caller=None):
    """Cancel a movement, revert its stock effect and settle its dues.

    Dues with nothing paid are deleted; partly paid dues are cancelled. A fully
    paid due blocks the cancellation.
    """
    with storage_errors("stock_movement.cancel"), transaction.atomic():
        movement = _locked_movement(movement_id, caller)
        if movement.status == StockMovement.Status.CANCELLED:
            raise AlreadyCancelled("Stock movement is already cancelled.")

        if movement.stock_applied:
            revert_stock_effect(movement)
        movement.status = StockMovement.Status.CANCELLED
        movement.save(update_fields=["status", "updated_at"])

        effects = []
        for ledger, due in movement_dues(movement.id):
            if due.status == Due.Status.PAID:
                raise InvalidDueState(
                    "Movement has a fully paid due and cannot be cancelled.",
                    errors={"due_type": ledger.due_type, "due_id": str(due.id)},
                )
            if due.paid_amount == ZERO and not ledger.payments_for(due.id).exists():
                ledger.delete(due.id)
                effects.append({"due_type": ledger.due_type, "due_id": str(due.id), "action": "deleted"})
            else:
                ledger.cancel(due.id)
                effects.append({"due_type": ledger.due_type, "due_id": str(due.id), "action": "cancelled"})

    logger.info(
        "stock_movement_cancelled",
        extra={"stock_movement_id": str(movement.id), "movement_type": movement.movement_type, "status": movement.status},
    )
    return movement, effects


def get_movement(movement_id, caller=None):
    movement = (
        StockMovement.objects.select_related("product", "branch", "reference_branch", "supplier", "user")
        .filter(pk=movement_id)
        .first()
    )
    if movement is None or (
        caller is not None and not caller.can_access_branch(movement.branch_id, movement.reference_branch_id)
    ):
        raise RecordNotFound("Stock movement not found.")
    return movement


def list_movements(
    *,
    branch_id=None,
    product_id=None,
    movement_type=None,
    reference_branch_id=None,
    date_from=None,
    date_to=None,
    include_cancelled=False,
):
    qs = StockMovement.objects.select_related("product", "branch", "reference_branch", "supplier", "user")
    if not include_cancelled:
        qs = qs.exclude(status=StockMovement.Status.CANCELLED)
    if branch_id:
        qs = qs.filter(branch_id=branch_id)
    if product_id:
        qs = qs.filter(product_id=product_id)
    if movement_type:
        if movement_type not in StockMovement.MovementType.values:
            raise LedgerValidationError(
                errors={"movement_type": f"Must be one of: {', '.join(StockMovement.MovementType.values)}."}
            )
        qs = qs.filter(movement_type=movement_type)
    if reference_branch_id:
        qs = qs.filter(reference_branch_id=reference_branch_id)
    if date_from:
        qs = qs.filter(date__gte=date_from)
    if date_to:
        qs = qs.filter(date__lte=date_to)
    return qs.order_by("-date", "-created_at")


def movement_summary(*, branch_id=None, date_from=None, date_to=None):
    rows = (
        list_movements(branch_id=branch_id, date_from=date_from, date_to=date_to)
        .order_by()
        .values("movement_type")
        .annotate(
            count=Count("id"),
            total_quantity=Sum("quantity"),
            average_price=Avg("unit_price_per_meter"),
            total_amount=Sum("total_amount"),
        )
        .order_by("movement_type")
    )
    return [
        {
            "movement_type": row["movement_type"],
            "count": row["count"],
            "total_quantity": row["total_quantity"] or QUANTITY_ZERO,
            "average_price": to_money(row["average_price"] or 0, "average_price"),
            "total_amount": row["total_amount"] or ZERO,
        }
        for row in rows
    ]


def stock_levels(*, branch_id=None, product_id=None):
    qs = ProductStock.objects.select_related("product", "branch")
    if branch_id:
        qs = qs.filter(branch_id=branch_id)
    if product_id:
        qs = qs.filter(product_id=product_id)
    return qs.order_by("branch__code", "product__sku")
