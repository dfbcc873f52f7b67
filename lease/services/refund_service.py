"""
Refund gate and the refund operations that clear it.

A termination that is refund-gated may not proceed while the tenant still has
money held by the landlord: a deposit in ``held`` status, or rent already paid
for cycles that have not started yet.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentPayment, SecurityDeposit, User, DepositStatus, RentPaymentStatus
)
from lease.errors import ForbiddenError, NotFoundError, ValidationError
from lease.schemas.validation import AmountModel, validate
from lease.services.agreement_service import lock_agreement, require_owner
from lease.services.notification_service import notification_for, get_dispatcher
from lease.utils.ui import format_amount

logger = logging.getLogger(__name__)


class RefundAction:
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    FORFEIT = "forfeit"

    ALL = (REFUND, PARTIAL_REFUND, FORFEIT)


class AdvanceRefund(NamedTuple):
    count: int
    total: Decimal


def pending_deposit_amount(deposit: Optional[SecurityDeposit]) -> Decimal:
    if deposit is None or deposit.status != DepositStatus.held.value:
        return Decimal("0")
    return Decimal(deposit.amount or 0)


def prepaid_future_rent(obligations: Iterable[RentPayment], today: date) -> Decimal:
    return sum(
        (Decimal(o.amount_paid or 0) for o in obligations
         if o.status == RentPaymentStatus.completed.value and o.due_date > today and not o.is_deleted),
        Decimal("0")
    )


def check_refunds_or_raise(
    deposit: Optional[SecurityDeposit],
    obligations: Iterable[RentPayment],
    today: date
):
    deposit_amount = pending_deposit_amount(deposit)
    advance_amount = prepaid_future_rent(obligations, today)

    if deposit_amount > 0 or advance_amount > 0:
        raise ForbiddenError(
            "Refund required before termination: "
            f"security deposit {format_amount(deposit_amount)}, "
            f"advance rent {format_amount(advance_amount)}",
            {
                "field": "refund",
                "security_deposit": str(deposit_amount),
                "advance_rent": str(advance_amount),
            }
        )


async def load_refund_state(session: AsyncSession, agreement_id: int):
    deposit = (await session.execute(
        select(SecurityDeposit)
        .where(SecurityDeposit.rental_agreement_id == agreement_id)
        .with_for_update()
    )).scalar_one_or_none()
    obligations = (await session.execute(
        select(RentPayment).where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.is_deleted == False
        )
    )).scalars().all()
    return deposit, obligations


async def ensure_refunds_cleared(session: AsyncSession, agreement_id: int, today: date):
    deposit, obligations = await load_refund_state(session, agreement_id)
    check_refunds_or_raise(deposit, obligations, today)


async def refund_security_deposit(
    session: AsyncSession,
    agreement_id: int,
    landlord_id: int,
    action: str,
    amount=None,
    notes: Optional[str] = None
) -> SecurityDeposit:
    if action not in RefundAction.ALL:
        raise ValidationError(f"Unknown refund action '{action}'", {"field": "action"})

    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_owner(agreement, landlord_id)

        deposit = (await session.execute(
            select(SecurityDeposit)
            .where(SecurityDeposit.rental_agreement_id == agreement.id)
            .with_for_update()
        )).scalar_one_or_none()
        if not deposit:
            raise NotFoundError("No security deposit recorded for this agreement", {"agreement_id": agreement.id})
        if deposit.status != DepositStatus.held.value:
            raise ForbiddenError(
                f"Security deposit is already {deposit.status}",
                {"field": "status", "deposit_id": deposit.id}
            )

        now = utcnow()
        if action == RefundAction.REFUND:
            deposit.status = DepositStatus.refunded.value
            deposit.refunded_amount = deposit.amount
            deposit.refunded_at = now
        elif action == RefundAction.PARTIAL_REFUND:
            refund = validate(AmountModel, amount=amount).amount
            if refund >= Decimal(deposit.amount):
                raise ValidationError(
                    "Partial refund must be less than the deposit",
                    {"field": "amount", "deposit": str(deposit.amount)}
                )
            deposit.status = DepositStatus.partially_refunded.value
            deposit.refunded_amount = refund
            deposit.refunded_at = now
        else:
            deposit.status = DepositStatus.forfeited.value

        if notes:
            deposit.notes = notes
        logger.info(f"Deposit {deposit.id} of agreement {agreement.id}: {action} ({deposit.refunded_amount})")

        tenant = await session.get(User, agreement.tenant_id) if agreement.tenant_id else None
        events = notification_for(
            tenant, "Security deposit update",
            f"Security deposit for agreement #{agreement.id}: {deposit.status}, "
            f"refunded {format_amount(deposit.refunded_amount, deposit.currency)}."
        )

    await get_dispatcher().publish(events)
    return deposit


async def refund_advance_rent(
    session: AsyncSession,
    agreement_id: int,
    landlord_id: int,
    notes: Optional[str] = None,
    today: Optional[date] = None
) -> AdvanceRefund:
    """Refund rent paid for cycles starting after ``today``."""
    today = today or utcnow().date()

    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_owner(agreement, landlord_id)

        future: List[RentPayment] = (await session.execute(
            select(RentPayment)
            .where(
                RentPayment.rental_agreement_id == agreement.id,
                RentPayment.due_date > today,
                RentPayment.status.in_((RentPaymentStatus.completed.value, RentPaymentStatus.partial.value)),
                RentPayment.is_deleted == False
            )
            .order_by(RentPayment.due_date)
            .with_for_update()
        )).scalars().all()

        total = Decimal("0")
        for obligation in future:
            total += Decimal(obligation.amount_paid or 0)
            obligation.status = RentPaymentStatus.refunded.value
            if notes:
                obligation.notes = notes

        logger.info(f"Refunded {len(future)} advance obligation(s) of agreement {agreement.id}: {total}")

        tenant = await session.get(User, agreement.tenant_id) if agreement.tenant_id else None
        events = notification_for(
            tenant, "Advance rent refunded",
            f"{format_amount(total)} of advance rent for agreement #{agreement.id} was refunded."
        ) if future else []

    await get_dispatcher().publish(events)
    return AdvanceRefund(count=len(future), total=total)
