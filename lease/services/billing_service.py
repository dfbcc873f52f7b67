import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lease.config import config
from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentalAgreement, RentPayment, User,
    AgreementStatus, RentPaymentStatus, OUTSTANDING_STATUSES
)
from lease.errors import NotFoundError
from lease.services.agreement_service import lock_agreement
from lease.services.notification_service import notification_for, get_dispatcher
from lease.utils.period import format_period
from lease.utils.ui import UIMessages, format_amount, format_date

logger = logging.getLogger(__name__)


class ObligationInfo(NamedTuple):
    """Single obligation line of a balance"""
    id: int
    due_date: date
    due_amount: Decimal
    amount_paid: Decimal
    status: str


class AgreementBalance(NamedTuple):
    agreement_id: int
    total_due: Decimal  # obligations due up to as_of_date
    total_paid: Decimal
    outstanding: Decimal  # unpaid part of all open obligations
    advance_total: Decimal  # paid for cycles starting after as_of_date
    unpaid: List[ObligationInfo]


async def get_agreement_balance(
    session: AsyncSession,
    agreement_id: int,
    as_of_date: Optional[date] = None
) -> AgreementBalance:
    if as_of_date is None:
        as_of_date = utcnow().date()

    agreement = await session.get(RentalAgreement, agreement_id)
    if not agreement or agreement.is_deleted:
        raise NotFoundError(f"Agreement {agreement_id} not found", {"agreement_id": agreement_id})

    result = await session.execute(
        select(RentPayment)
        .where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.status.not_in((RentPaymentStatus.cancelled.value, RentPaymentStatus.refunded.value)),
            RentPayment.is_deleted == False
        )
        .order_by(RentPayment.due_date, RentPayment.id)
    )
    obligations = result.scalars().all()

    zero = Decimal("0")
    total_due = sum((Decimal(o.due_amount) for o in obligations if o.due_date <= as_of_date), zero)
    total_paid = sum((Decimal(o.amount_paid or 0) for o in obligations), zero)
    unpaid = [
        ObligationInfo(o.id, o.due_date, Decimal(o.due_amount), Decimal(o.amount_paid or 0), o.status)
        for o in obligations if o.status in OUTSTANDING_STATUSES
    ]
    outstanding = sum((i.due_amount - i.amount_paid for i in unpaid), zero)
    advance_total = sum(
        (Decimal(o.amount_paid or 0) for o in obligations
         if o.due_date > as_of_date and o.status == RentPaymentStatus.completed.value),
        zero
    )

    return AgreementBalance(
        agreement_id=agreement_id,
        total_due=total_due,
        total_paid=total_paid,
        outstanding=outstanding,
        advance_total=advance_total,
        unpaid=unpaid
    )


async def ensure_next_obligation(
    session: AsyncSession,
    agreement: RentalAgreement,
    today: date
) -> List[RentPayment]:
    """
    Create pending obligations for every cycle that has started since the
    latest one. Nothing is created before the first payment.
    """
    if agreement.status != AgreementStatus.active.value:
        return []

    latest = (await session.execute(
        select(RentPayment.due_date)
        .where(
            RentPayment.rental_agreement_id == agreement.id,
            RentPayment.status.not_in((RentPaymentStatus.cancelled.value, RentPaymentStatus.refunded.value)),
            RentPayment.is_deleted == False
        )
        .order_by(RentPayment.due_date.desc())
        .limit(1)
    )).scalar_one_or_none()
    if latest is None:
        return []

    days = config.RENT_CYCLE_DAYS
    created = []
    next_due = latest + timedelta(days=days)
    while next_due <= today:
        obligation = RentPayment(
            rental_agreement_id=agreement.id,
            tenant_id=agreement.tenant_id,
            property_id=agreement.property_id,
            unit_id=agreement.unit_id,
            due_date=next_due,
            due_amount=agreement.monthly_rent,
            amount_paid=Decimal("0"),
            status=RentPaymentStatus.pending.value,
            period_covered=format_period(next_due, days),
            is_deleted=False
        )
        session.add(obligation)
        created.append(obligation)
        next_due = next_due + timedelta(days=days)

    if created:
        await session.flush()
        logger.info(f"Created {len(created)} rent obligation(s) for agreement {agreement.id}")
    return created


async def mark_overdue_obligations(session: AsyncSession, today: date) -> int:
    result = await session.execute(
        select(RentPayment)
        .where(
            RentPayment.status == RentPaymentStatus.pending.value,
            RentPayment.due_date < today,
            RentPayment.is_deleted == False
        )
        .with_for_update()
    )
    overdue = result.scalars().all()
    for obligation in overdue:
        obligation.status = RentPaymentStatus.overdued.value
    if overdue:
        logger.info(f"Marked {len(overdue)} obligation(s) overdue")
    return len(overdue)


async def run_billing(session: AsyncSession, today: Optional[date] = None) -> int:
    """Billing pass over all active agreements; returns created obligation count."""
    today = today or utcnow().date()

    result = await session.execute(
        select(RentalAgreement.id).where(
            RentalAgreement.status == AgreementStatus.active.value,
            RentalAgreement.is_deleted == False
        )
    )
    agreement_ids = list(result.scalars().all())
    await session.commit()

    created_total = 0
    for agreement_id in agreement_ids:
        try:
            async with transaction(session):
                agreement = await lock_agreement(session, agreement_id)
                created = await ensure_next_obligation(session, agreement, today)
                tenant = await session.get(User, agreement.tenant_id) if created else None
                events = []
                for obligation in created:
                    events += notification_for(
                        tenant, "Rent due",
                        UIMessages.field("Due date", format_date(obligation.due_date))
                        + UIMessages.field("Amount", format_amount(obligation.due_amount))
                    )
        except Exception as e:
            logger.error(f"Error processing billing for agreement {agreement_id}: {e}")
            continue

        created_total += len(created)
        await get_dispatcher().publish(events)

    async with transaction(session):
        await mark_overdue_obligations(session, today)

    return created_total
