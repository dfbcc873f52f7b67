"""
Payment allocation across rent obligations.

Implements FIFO (oldest due date first) allocation, advance-period generation
and the trailing partial obligation. All functions here are pure: they update
or build RentPayment objects in memory and leave persistence to the caller,
which adds them to its session inside a single transaction.
"""
import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, NamedTuple, Optional, Set

from lease.config import config
from lease.database.models import RentalAgreement, RentPayment, RentPaymentStatus
from lease.errors import ServerError
from lease.utils.period import build_period, format_period

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class CoveredPeriod(NamedTuple):
    start: date
    end: date
    partial: bool


class DueAllocation(NamedTuple):
    remaining: Decimal
    touched: List[RentPayment]
    completed: List[RentPayment]
    periods: List[CoveredPeriod]


class AdvanceAllocation(NamedTuple):
    remaining: Decimal
    next_due_date: date  # first cycle not covered by the created advances
    created: List[RentPayment]
    periods: List[CoveredPeriod]


def new_transaction_id(prefix: str = "MANUAL") -> str:
    return f"{prefix}-{uuid.uuid4()}"


def derive_status(amount_paid: Decimal, due_amount: Decimal) -> str:
    """completed iff fully paid, partial if anything was paid, pending otherwise."""
    if amount_paid >= due_amount:
        return RentPaymentStatus.completed.value
    if amount_paid > ZERO:
        return RentPaymentStatus.partial.value
    return RentPaymentStatus.pending.value


def _covered(obligation: RentPayment, days: int) -> CoveredPeriod:
    period = build_period(obligation.due_date, days)
    return CoveredPeriod(
        start=period.start,
        end=period.end,
        partial=obligation.status != RentPaymentStatus.completed.value
    )


def apply_to_dues(
    dues: Iterable[RentPayment],
    amount: Decimal,
    method: str,
    notes: Optional[str],
    now: datetime,
    transaction_id: Optional[str] = None,
    days: int = None
) -> DueAllocation:
    """
    Distribute ``amount`` over outstanding obligations.

    ``dues`` must already be ordered by due_date ascending; they are consumed
    in that order and never reordered. When ``transaction_id`` is None every
    touched obligation gets its own freshly generated id, otherwise the
    gateway's canonical id is recorded on each of them.

    Returns the unallocated remainder and the obligations that were changed.
    """
    if days is None:
        days = config.RENT_CYCLE_DAYS

    remaining = Decimal(amount)
    touched: List[RentPayment] = []
    completed: List[RentPayment] = []
    periods: List[CoveredPeriod] = []

    for obligation in dues:
        if remaining <= ZERO:
            break

        due_amount = Decimal(obligation.due_amount)
        already_paid = Decimal(obligation.amount_paid or 0)
        balance = due_amount - already_paid
        if balance <= ZERO:
            continue

        pay_now = min(remaining, balance)
        new_paid = already_paid + pay_now

        logger.info(
            f"Allocating {pay_now} to obligation {obligation.id} due {obligation.due_date}: "
            f"{new_paid} / {due_amount}"
        )

        obligation.amount_paid = new_paid
        obligation.status = derive_status(new_paid, due_amount)
        obligation.method = method
        obligation.transaction_id = transaction_id or new_transaction_id()
        obligation.payment_date = now
        obligation.period_covered = format_period(obligation.due_date, days)
        if notes:
            obligation.notes = notes

        touched.append(obligation)
        periods.append(_covered(obligation, days))
        if obligation.status == RentPaymentStatus.completed.value:
            completed.append(obligation)

        remaining -= pay_now

    return DueAllocation(remaining=remaining, touched=touched, completed=completed, periods=periods)


def create_advance_payments(
    agreement: RentalAgreement,
    tenant_id: int,
    monthly_rent: Decimal,
    remaining: Decimal,
    method: str,
    notes: Optional[str],
    now: datetime,
    start_date: date,
    transaction_id: Optional[str] = None,
    taken_due_dates: Optional[Set[date]] = None,
    days: int = None
) -> AdvanceAllocation:
    """
    Materialize fully paid obligations for future cycles while at least one
    full cycle of rent remains.

    Cycles whose due date already has an obligation (``taken_due_dates``) are
    skipped without consuming money, so replaying a payment never creates the
    same period twice.
    """
    if days is None:
        days = config.RENT_CYCLE_DAYS

    monthly_rent = Decimal(monthly_rent)
    remaining = Decimal(remaining)
    taken = taken_due_dates or set()
    next_start = start_date
    created: List[RentPayment] = []
    periods: List[CoveredPeriod] = []

    while remaining >= monthly_rent:
        if next_start in taken:
            next_start = next_start + timedelta(days=days)
            continue

        obligation = RentPayment(
            rental_agreement_id=agreement.id,
            tenant_id=tenant_id,
            property_id=agreement.property_id,
            unit_id=agreement.unit_id,
            due_date=next_start,
            due_amount=monthly_rent,
            amount_paid=monthly_rent,
            status=RentPaymentStatus.completed.value,
            method=method,
            transaction_id=transaction_id or new_transaction_id(),
            period_covered=format_period(next_start, days),
            payment_date=now,
            notes=notes,
            is_deleted=False
        )
        created.append(obligation)
        periods.append(CoveredPeriod(*build_period(next_start, days), partial=False))

        remaining -= monthly_rent
        next_start = next_start + timedelta(days=days)

    if created:
        logger.info(f"Prepared {len(created)} advance obligation(s) for agreement {agreement.id}")

    return AdvanceAllocation(remaining=remaining, next_due_date=next_start, created=created, periods=periods)


def create_partial_payment(
    agreement: RentalAgreement,
    tenant_id: int,
    monthly_rent: Decimal,
    remaining: Decimal,
    method: str,
    notes: Optional[str],
    due_date: date,
    now: datetime,
    transaction_id: Optional[str] = None,
    days: int = None
) -> RentPayment:
    """Single trailing obligation for a remainder smaller than one cycle."""
    if days is None:
        days = config.RENT_CYCLE_DAYS

    monthly_rent = Decimal(monthly_rent)
    remaining = Decimal(remaining)
    if not ZERO < remaining < monthly_rent:
        raise ServerError(
            f"Partial remainder {remaining} must be between 0 and {monthly_rent}",
            {"field": "remaining", "agreement_id": agreement.id}
        )

    return RentPayment(
        rental_agreement_id=agreement.id,
        tenant_id=tenant_id,
        property_id=agreement.property_id,
        unit_id=agreement.unit_id,
        due_date=due_date,
        due_amount=monthly_rent,
        amount_paid=remaining,
        status=RentPaymentStatus.partial.value,
        method=method,
        transaction_id=transaction_id or new_transaction_id(),
        period_covered=format_period(due_date, days),
        payment_date=now,
        notes=notes,
        is_deleted=False
    )
