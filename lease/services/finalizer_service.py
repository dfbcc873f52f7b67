"""
Termination finalizer and the termination bookkeeping shared by every reason.

``finalize_agreement_termination`` runs inside the caller's transaction on an
already locked agreement; it is the only place an agreement becomes
``terminated``.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lease.database.models import (
    RentalAgreement, SecurityDeposit, EvictionLog, BreachLog, User,
    DepositStatus, EvictionStatus, PropertyStatus, TerminationReason,
    OPEN_BREACH_STATUSES
)
from lease.errors import ForbiddenError
from lease.services.agreement_service import apply_transition, cancel_unpaid_obligations, set_occupancy
from lease.services.notification_service import NotificationRequested, notification_for
from lease.services.state_machine import AgreementEvent
from lease.utils.ui import format_date

logger = logging.getLogger(__name__)


async def ensure_no_open_case(session: AsyncSession, agreement: RentalAgreement):
    """One termination case at a time per agreement."""
    eviction_id = (await session.execute(
        select(EvictionLog.id).where(
            EvictionLog.agreement_id == agreement.id,
            EvictionLog.status == EvictionStatus.warning.value
        )
    )).scalars().first()
    breach_id = (await session.execute(
        select(BreachLog.id).where(
            BreachLog.agreement_id == agreement.id,
            BreachLog.status.in_(OPEN_BREACH_STATUSES)
        )
    )).scalars().first()

    pending_mutual = (
        agreement.termination_reason == TerminationReason.MUTUAL_AGREEMENT.value
        and eviction_id is None
    )
    if eviction_id is not None or breach_id is not None or pending_mutual:
        raise ForbiddenError(
            "A termination case is already open for this agreement",
            {
                "field": "agreement_id",
                "agreement_id": agreement.id,
                "eviction_log_id": eviction_id,
                "breach_log_id": breach_id,
            }
        )


def record_termination_request(
    agreement: RentalAgreement,
    user_id: int,
    role: str,
    reason: str,
    description: Optional[str],
    now: datetime
):
    agreement.termination_reason = reason
    agreement.termination_requested_by = user_id
    agreement.termination_role = role
    agreement.termination_requested_at = now
    agreement.termination_description = description


def clear_termination_request(agreement: RentalAgreement):
    agreement.termination_reason = None
    agreement.termination_requested_by = None
    agreement.termination_role = None
    agreement.termination_requested_at = None
    agreement.termination_description = None
    agreement.termination_effective_date = None
    agreement.landlord_accepted_termination = False
    agreement.tenant_accepted_termination = False
    agreement.did_admin_approve_breach = False


async def party_notifications(
    session: AsyncSession,
    agreement: RentalAgreement,
    title: str,
    body: str
) -> List[NotificationRequested]:
    events: List[NotificationRequested] = []
    for user_id in (agreement.owner_id, agreement.tenant_id):
        user = await session.get(User, user_id) if user_id else None
        events += notification_for(user, title, body)
    return events


async def finalize_agreement_termination(
    session: AsyncSession,
    agreement: RentalAgreement,
    timestamp: datetime
) -> List[NotificationRequested]:
    """
    Terminate the agreement:
    - status -> terminated, effective date recorded
    - held deposit forfeited (refunded deposits stay refunded)
    - unpaid obligations cancelled
    - property/unit available again
    """
    apply_transition(agreement, AgreementEvent.TERMINATE)
    agreement.termination_effective_date = timestamp
    agreement.termination_confirmed_at = timestamp

    deposit = (await session.execute(
        select(SecurityDeposit)
        .where(SecurityDeposit.rental_agreement_id == agreement.id)
        .with_for_update()
    )).scalar_one_or_none()
    if deposit is not None and deposit.status == DepositStatus.held.value:
        deposit.status = DepositStatus.forfeited.value
        logger.info(f"Deposit {deposit.id} of agreement {agreement.id} forfeited")

    await cancel_unpaid_obligations(session, agreement.id)
    await set_occupancy(session, agreement, PropertyStatus.available)

    logger.info(f"Agreement {agreement.id} terminated ({agreement.termination_reason}) at {timestamp}")

    return await party_notifications(
        session, agreement,
        "Agreement terminated",
        f"Rental agreement #{agreement.id} was terminated on {format_date(timestamp)}."
    )
