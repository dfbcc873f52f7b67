"""
Grace-period evictions: NON_PAYMENT and OWNER_REQUIREMENT.

Both create an eviction log in ``warning`` with a grace period; the log is
then cancelled by the landlord, confirmed once the grace period has passed,
or finalized by the scheduler.
"""
import logging
from datetime import date, datetime, timedelta
from typing import List, NamedTuple, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lease.config import config
from lease.database.models import (
    RentalAgreement, RentPayment, EvictionLog, User,
    EvictionStatus, TerminationReason, UserRole, OUTSTANDING_STATUSES
)
from lease.errors import ForbiddenError, NotFoundError
from lease.services.agreement_service import require_owner
from lease.services.finalizer_service import party_notifications
from lease.services.notification_service import NotificationRequested
from lease.services.refund_service import ensure_refunds_cleared
from lease.utils.ui import UIMessages, format_amount, format_date

logger = logging.getLogger(__name__)


class EvictionEligibility(NamedTuple):
    eligible: bool
    due_date: Optional[date]  # obligation the decision is based on
    eligible_from: Optional[date]
    outstanding: object


async def _unpaid_obligations(session: AsyncSession, agreement_id: int) -> List[RentPayment]:
    result = await session.execute(
        select(RentPayment)
        .where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.status.in_(OUTSTANDING_STATUSES),
            RentPayment.is_deleted == False
        )
        .order_by(RentPayment.due_date.desc(), RentPayment.id.desc())
    )
    return list(result.scalars().all())


async def check_eviction_eligibility(
    session: AsyncSession,
    agreement_id: int,
    today: date
) -> EvictionEligibility:
    """
    Eligible once an unpaid obligation is at least one calendar month past its
    due date; ``due_date`` is the most recent such obligation.

    Cycles billed after that one do not reset the count. When nothing is
    eligible yet, ``due_date`` is the oldest unpaid obligation.
    """
    unpaid = await _unpaid_obligations(session, agreement_id)
    if not unpaid:
        return EvictionEligibility(False, None, None, 0)

    outstanding = sum(o.balance for o in unpaid)
    for obligation in unpaid:
        eligible_from = obligation.due_date + relativedelta(months=1)
        if today >= eligible_from:
            return EvictionEligibility(True, obligation.due_date, eligible_from, outstanding)

    oldest = unpaid[-1]
    return EvictionEligibility(False, oldest.due_date, oldest.due_date + relativedelta(months=1), outstanding)


async def arrears_cleared(session: AsyncSession, agreement_id: int, arrears_due_date: date) -> bool:
    """True when the obligation an eviction was opened for, and every older one, is paid."""
    unpaid = await _unpaid_obligations(session, agreement_id)
    return not any(o.due_date <= arrears_due_date for o in unpaid)


async def require_eviction_eligibility(session: AsyncSession, agreement: RentalAgreement, today: date):
    eligibility = await check_eviction_eligibility(session, agreement.id, today)
    if not eligibility.eligible:
        if eligibility.due_date is None:
            message = "Tenant has no unpaid rent"
        else:
            message = (
                f"Unpaid rent due {format_date(eligibility.due_date)} is not one month overdue "
                f"until {format_date(eligibility.eligible_from)}"
            )
        raise ForbiddenError(message, {
            "field": "termination_reason",
            "agreement_id": agreement.id,
            "due_date": str(eligibility.due_date) if eligibility.due_date else None,
        })
    return eligibility


def _grace_days(grace_days: Optional[int]) -> int:
    return config.DEFAULT_GRACE_DAYS if grace_days is None else grace_days


def new_eviction_log(
    agreement: RentalAgreement,
    reason: TerminationReason,
    initiator_id: int,
    description: Optional[str],
    grace_days: int,
    now: datetime
) -> EvictionLog:
    return EvictionLog(
        agreement_id=agreement.id,
        reason=reason.value,
        status=EvictionStatus.warning.value,
        initiated_by=initiator_id,
        description=description,
        warning_sent_at=now,
        grace_period_end=now + timedelta(days=grace_days)
    )


async def _warning_notifications(
    session: AsyncSession,
    agreement: RentalAgreement,
    log: EvictionLog,
    extra: str = ""
) -> List[NotificationRequested]:
    body = (
        UIMessages.field("Reason", log.reason)
        + UIMessages.field("Grace period ends", format_date(log.grace_period_end))
        + extra
    )
    return await party_notifications(session, agreement, f"Termination notice for agreement #{agreement.id}", body)


async def initiate_non_payment(
    session: AsyncSession,
    agreement: RentalAgreement,
    initiator_id: int,
    description: Optional[str],
    grace_days: Optional[int],
    now: datetime
) -> Tuple[EvictionLog, List[NotificationRequested]]:
    require_owner(agreement, initiator_id)
    eligibility = await require_eviction_eligibility(session, agreement, now.date())

    log = new_eviction_log(
        agreement, TerminationReason.NON_PAYMENT, initiator_id, description, _grace_days(grace_days), now
    )
    log.arrears_due_date = eligibility.due_date
    session.add(log)
    await session.flush()

    logger.info(f"Non-payment eviction {log.id} opened for agreement {agreement.id}, grace until {log.grace_period_end}")
    events = await _warning_notifications(
        session, agreement, log,
        UIMessages.field("Outstanding rent", format_amount(eligibility.outstanding))
    )
    return log, events


async def initiate_owner_requirement(
    session: AsyncSession,
    agreement: RentalAgreement,
    initiator_id: int,
    description: Optional[str],
    grace_days: Optional[int],
    now: datetime
) -> Tuple[EvictionLog, List[NotificationRequested]]:
    require_owner(agreement, initiator_id)
    await ensure_refunds_cleared(session, agreement.id, now.date())

    log = new_eviction_log(
        agreement, TerminationReason.OWNER_REQUIREMENT, initiator_id, description, _grace_days(grace_days), now
    )
    session.add(log)
    await session.flush()

    logger.info(f"Owner-requirement eviction {log.id} opened for agreement {agreement.id}")
    events = await _warning_notifications(session, agreement, log)
    return log, events


async def lock_eviction_log(session: AsyncSession, log_id: int) -> EvictionLog:
    log = (await session.execute(
        select(EvictionLog)
        .where(EvictionLog.id == log_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not log:
        raise NotFoundError(f"Eviction log {log_id} not found", {"eviction_log_id": log_id})
    return log


def grace_period_over(log: EvictionLog, now: datetime) -> bool:
    return log.grace_period_end is None or log.grace_period_end <= now


def require_grace_period_over(log: EvictionLog, now: datetime):
    if not grace_period_over(log, now):
        raise ForbiddenError(
            f"Grace period runs until {format_date(log.grace_period_end)}",
            {"field": "grace_period_end", "eviction_log_id": log.id}
        )


def require_grace_period_running(log: EvictionLog, now: datetime):
    if grace_period_over(log, now):
        raise ForbiddenError(
            "Grace period has already ended",
            {"field": "grace_period_end", "eviction_log_id": log.id}
        )


async def require_can_confirm(session: AsyncSession, agreement: RentalAgreement, log: EvictionLog, user_id: int):
    """The landlord or an admin; for a mutual agreement either party."""
    if log.reason == TerminationReason.MUTUAL_AGREEMENT.value and user_id == agreement.tenant_id:
        return
    if user_id == agreement.owner_id:
        return
    user = await session.get(User, user_id)
    if user is None or user.role != UserRole.admin.value:
        raise ForbiddenError("You cannot confirm this termination", {"field": "user_id", "eviction_log_id": log.id})


async def require_can_cancel(session: AsyncSession, agreement: RentalAgreement, log: EvictionLog, user_id: int):
    if log.reason == TerminationReason.MUTUAL_AGREEMENT.value and user_id == agreement.tenant_id:
        return
    if user_id == agreement.owner_id:
        return
    user = await session.get(User, user_id)
    if user is None or user.role != UserRole.admin.value:
        raise ForbiddenError("You cannot cancel this termination", {"field": "user_id", "eviction_log_id": log.id})


def cancellation_notice(agreement: RentalAgreement, reason: Optional[str]) -> str:
    body = f"The termination of agreement #{agreement.id} was cancelled."
    if reason:
        body += "\n" + UIMessages.field("Reason", reason)
    return body
