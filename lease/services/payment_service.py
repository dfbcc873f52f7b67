"""
Payment orchestrator.

Both entry points run every write (obligations, deposit, gateway record,
agreement and property status) inside one transaction on a locked agreement
row, then publish notifications once the transaction has committed.

Initial payment (activates the lease):
1. Lock agreement, check tenant / status / acceptance
2. Require amount >= monthly_rent + security_deposit (nothing is written otherwise)
3. Charge gateway, create first obligation (completed) and deposit (held)
4. Route the surplus to advance cycles, then to one trailing partial obligation
5. Activate agreement, mark property/unit occupied

Recurring payment (landlord records it, or tenant pays through the gateway):
1. Lock agreement, check payer and that the agreement is active
2. Allocate oldest-due-first over outstanding obligations
3. Surplus becomes advance cycles, then a trailing partial obligation
"""
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, NamedTuple, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from lease.config import config
from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentalAgreement, RentPayment, SecurityDeposit, User,
    AgreementStatus, DepositStatus, GatewayPaymentType, PropertyStatus,
    RentPaymentStatus, UserRole, OUTSTANDING_STATUSES
)
from lease.errors import AuthError, ForbiddenError, ServerError, ValidationError
from lease.schemas.validation import PaymentInput, validate
from lease.services.agreement_service import (
    lock_agreement, get_user_or_raise, require_owner, require_tenant,
    apply_transition, set_occupancy
)
from lease.services.allocation_service import (
    CoveredPeriod, apply_to_dues, create_advance_payments, create_partial_payment
)
from lease.services.gateway_service import payment_gateway
from lease.services.notification_service import notification_for, get_dispatcher
from lease.services.state_machine import AgreementEvent
from lease.utils.period import build_period, format_period
from lease.utils.ui import UIMessages, format_amount, format_periods

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PaymentOutcome:
    PARTIAL = "partial"
    PAID = "paid"
    ADVANCE = "advance"


class InitialPaymentResult(NamedTuple):
    obligation: RentPayment
    deposit: SecurityDeposit
    agreement_status: str
    transaction_id: str
    advances: List[RentPayment]
    partial: Optional[RentPayment]


class PaymentResult(NamedTuple):
    status: str
    allocated_obligation_ids: List[int]
    outstanding_balance: Decimal
    transaction_id: Optional[str]
    periods: List[CoveredPeriod]


def _monthly_rent(agreement: RentalAgreement) -> Decimal:
    rent = Decimal(agreement.monthly_rent or 0)
    if rent <= ZERO:
        raise ServerError(
            "Monthly rent is not configured for this agreement",
            {"field": "monthly_rent", "agreement_id": agreement.id}
        )
    return rent


def _require_status(agreement: RentalAgreement, status: AgreementStatus):
    if agreement.status != status.value:
        raise AuthError(
            f"Agreement must be {status.value} for this payment (currently {agreement.status})",
            {"field": "status", "agreement_id": agreement.id, "status": agreement.status}
        )


def _payment_summary(amount: Decimal, periods: List[CoveredPeriod], balance: Decimal) -> str:
    return (
        UIMessages.field("Amount", format_amount(amount))
        + UIMessages.field("Outstanding balance", format_amount(balance))
        + "Periods covered:\n"
        + format_periods(periods)
    )


async def _latest_due_date(session: AsyncSession, agreement_id: int) -> Optional[date]:
    result = await session.execute(
        select(func.max(RentPayment.due_date)).where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.status.not_in((RentPaymentStatus.cancelled.value, RentPaymentStatus.refunded.value)),
            RentPayment.is_deleted == False
        )
    )
    return result.scalar_one_or_none()


async def _taken_due_dates(session: AsyncSession, agreement_id: int) -> set:
    result = await session.execute(
        select(RentPayment.due_date).where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.status.not_in((RentPaymentStatus.cancelled.value, RentPaymentStatus.refunded.value)),
            RentPayment.is_deleted == False
        )
    )
    return set(result.scalars().all())


async def get_outstanding_dues(session: AsyncSession, agreement_id: int, lock: bool = False) -> List[RentPayment]:
    """Unpaid obligations, oldest due date first."""
    stmt = (
        select(RentPayment)
        .where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.status.in_(OUTSTANDING_STATUSES),
            RentPayment.is_deleted == False
        )
        .order_by(RentPayment.due_date, RentPayment.id)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_initial_payment(
    session: AsyncSession,
    agreement_id: int,
    tenant_id: int,
    amount_paid,
    method: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None
) -> InitialPaymentResult:
    data = validate(PaymentInput, amount=amount_paid, method=method or payment_gateway.METHOD, notes=notes)
    now = now or utcnow()
    today = now.date()
    days = config.RENT_CYCLE_DAYS

    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_tenant(agreement, tenant_id)
        tenant = await get_user_or_raise(session, tenant_id)
        _require_status(agreement, AgreementStatus.pending_payment)
        if not agreement.tenant_accepted_agreement:
            raise ForbiddenError(
                "Accept the agreement before paying",
                {"field": "tenant_accepted_agreement", "agreement_id": agreement.id}
            )

        rent = _monthly_rent(agreement)
        deposit_amount = Decimal(agreement.security_deposit or 0)
        required = rent + deposit_amount
        if data.amount < required:
            raise ForbiddenError(
                f"Initial payment must be at least {format_amount(required)} "
                f"(rent {format_amount(rent)} + deposit {format_amount(deposit_amount)})",
                {"field": "amount", "required": str(required), "supplied": str(data.amount)}
            )

        charge = await payment_gateway.charge(
            session, data.amount, GatewayPaymentType.INITIAL_RENT_PAYMENT,
            {"agreement_id": agreement.id, "tenant_id": tenant.id}
        )

        first = RentPayment(
            rental_agreement_id=agreement.id,
            tenant_id=tenant.id,
            property_id=agreement.property_id,
            unit_id=agreement.unit_id,
            due_date=today,
            due_amount=rent,
            amount_paid=rent,
            status=RentPaymentStatus.completed.value,
            method=data.method,
            transaction_id=charge.transaction_id,
            period_covered=format_period(today, days),
            payment_date=now,
            notes=data.notes,
            is_deleted=False
        )
        deposit = SecurityDeposit(
            rental_agreement_id=agreement.id,
            amount=deposit_amount,
            currency=charge.currency,
            method=data.method,
            status=DepositStatus.held.value,
            transaction_id=charge.transaction_id,
            refunded_amount=ZERO
        )
        session.add_all([first, deposit])

        periods = [CoveredPeriod(*build_period(today, days), partial=False)]
        advances: List[RentPayment] = []
        partial = None
        remaining = data.amount - required
        if remaining > ZERO:
            advance = create_advance_payments(
                agreement, tenant.id, rent, remaining, data.method, data.notes, now,
                start_date=today + timedelta(days=days),
                transaction_id=charge.transaction_id,
                taken_due_dates={today}
            )
            advances = advance.created
            periods += advance.periods
            session.add_all(advances)
            remaining = advance.remaining

            if remaining > ZERO:
                partial = create_partial_payment(
                    agreement, tenant.id, rent, remaining, data.method, data.notes,
                    advance.next_due_date, now, transaction_id=charge.transaction_id
                )
                periods.append(CoveredPeriod(*build_period(partial.due_date, days), partial=True))
                session.add(partial)

        apply_transition(agreement, AgreementEvent.ACTIVATE)
        agreement.start_date = today
        await set_occupancy(session, agreement, PropertyStatus.occupied)
        await session.flush()

        balance = partial.balance if partial is not None else ZERO
        summary = _payment_summary(data.amount, periods, balance)
        owner = await session.get(User, agreement.owner_id)
        events = notification_for(tenant, "Payment received, lease active", summary)
        events += notification_for(owner, f"Agreement #{agreement.id} activated", summary)

    logger.info(
        f"Initial payment {charge.transaction_id} for agreement {agreement.id}: {data.amount} "
        f"({len(advances)} advance, partial={'yes' if partial is not None else 'no'})"
    )
    await get_dispatcher().publish(events)

    return InitialPaymentResult(
        obligation=first,
        deposit=deposit,
        agreement_status=agreement.status,
        transaction_id=charge.transaction_id,
        advances=advances,
        partial=partial
    )


async def record_payment(
    session: AsyncSession,
    agreement_id: int,
    payer_id: int,
    payer_role: str,
    amount,
    method: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None
) -> PaymentResult:
    """
    Landlord-recorded (manual) or tenant self-service payment on an active lease.

    Manual payments get a fresh transaction id per obligation; gateway payments
    carry the gateway's id on every obligation they touch.
    """
    role = getattr(payer_role, "value", payer_role)
    if role not in (UserRole.landlord.value, UserRole.tenant.value):
        raise ValidationError(f"Unsupported payer role '{role}'", {"field": "payer_role"})
    data = validate(PaymentInput, amount=amount, method=method or "Cash", notes=notes)
    now = now or utcnow()
    days = config.RENT_CYCLE_DAYS

    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        if role == UserRole.landlord.value:
            require_owner(agreement, payer_id)
        else:
            require_tenant(agreement, payer_id)
        _require_status(agreement, AgreementStatus.active)
        apply_transition(agreement, AgreementEvent.RECORD_PAYMENT)
        rent = _monthly_rent(agreement)

        tenant = await get_user_or_raise(session, agreement.tenant_id)

        transaction_id = None
        method_used = data.method
        if role == UserRole.tenant.value:
            charge = await payment_gateway.charge(
                session, data.amount, GatewayPaymentType.RENT_PAYMENT,
                {"agreement_id": agreement.id, "tenant_id": tenant.id}
            )
            transaction_id = charge.transaction_id
            method_used = charge.method

        dues = await get_outstanding_dues(session, agreement.id, lock=True)
        had_dues = bool(dues)
        allocation = apply_to_dues(dues, data.amount, method_used, data.notes, now, transaction_id)

        remaining = allocation.remaining
        periods = list(allocation.periods)
        touched = list(allocation.touched)
        completed_count = len(allocation.completed)
        partial = None

        if remaining > ZERO:
            latest = await _latest_due_date(session, agreement.id)
            start = latest + timedelta(days=days) if latest else (agreement.start_date or now.date())
            advance = create_advance_payments(
                agreement, tenant.id, rent, remaining, method_used, data.notes, now,
                start_date=start,
                transaction_id=transaction_id,
                taken_due_dates=await _taken_due_dates(session, agreement.id)
            )
            session.add_all(advance.created)
            touched += advance.created
            periods += advance.periods
            completed_count += len(advance.created)
            remaining = advance.remaining

            if remaining > ZERO:
                partial = create_partial_payment(
                    agreement, tenant.id, rent, remaining, method_used, data.notes,
                    advance.next_due_date, now, transaction_id=transaction_id
                )
                session.add(partial)
                touched.append(partial)
                periods.append(CoveredPeriod(*build_period(partial.due_date, days), partial=True))

        await session.flush()

        if completed_count == 0:
            outcome = PaymentOutcome.PARTIAL
        elif not had_dues:
            outcome = PaymentOutcome.ADVANCE
        else:
            outcome = PaymentOutcome.PAID

        balance = sum((o.balance for o in dues if o.status in OUTSTANDING_STATUSES), ZERO)
        if partial is not None:
            balance += partial.balance

        summary = _payment_summary(data.amount, periods, balance)
        owner = await session.get(User, agreement.owner_id)
        events = notification_for(tenant, "Rent payment recorded", summary)
        events += notification_for(owner, f"Rent received for agreement #{agreement.id}", summary)

    logger.info(
        f"Payment on agreement {agreement.id} by {role} {payer_id}: {data.amount} -> {outcome}, "
        f"{len(touched)} obligation(s), outstanding {balance}"
    )
    await get_dispatcher().publish(events)

    return PaymentResult(
        status=outcome,
        allocated_obligation_ids=[o.id for o in touched],
        outstanding_balance=balance,
        transaction_id=transaction_id,
        periods=periods
    )
