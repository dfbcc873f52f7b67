"""
Mutual termination: one party proposes, the other accepts.

The request lives on the agreement itself (termination_* fields and the two
acceptance flags) until both sides agree; only then the refund gate runs and
an eviction log is written.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentalAgreement, EvictionLog, EvictionStatus, TerminationReason, UserRole
)
from lease.errors import ForbiddenError
from lease.services.agreement_service import lock_agreement, apply_transition
from lease.services.finalizer_service import (
    record_termination_request, clear_termination_request,
    finalize_agreement_termination, party_notifications
)
from lease.services.notification_service import NotificationRequested, get_dispatcher
from lease.services.refund_service import ensure_refunds_cleared
from lease.services.state_machine import AgreementEvent
from lease.utils.ui import UIMessages, format_date

logger = logging.getLogger(__name__)


def party_role(agreement: RentalAgreement, user_id: int) -> str:
    if user_id == agreement.owner_id:
        return UserRole.landlord.value
    if agreement.tenant_id is not None and user_id == agreement.tenant_id:
        return UserRole.tenant.value
    raise ForbiddenError(
        "Only the landlord or the tenant can take part in a mutual termination",
        {"field": "user_id", "agreement_id": agreement.id}
    )


def has_pending_request(agreement: RentalAgreement) -> bool:
    return (
        agreement.termination_reason == TerminationReason.MUTUAL_AGREEMENT.value
        and not (agreement.landlord_accepted_termination and agreement.tenant_accepted_termination)
    )


async def initiate_mutual(
    session: AsyncSession,
    agreement: RentalAgreement,
    initiator_id: int,
    description: Optional[str],
    grace_days: Optional[int],
    now: datetime
) -> List[NotificationRequested]:
    role = party_role(agreement, initiator_id)
    record_termination_request(
        agreement, initiator_id, role, TerminationReason.MUTUAL_AGREEMENT.value, description, now
    )
    # Proposed end date; None means terminate as soon as both accept
    agreement.termination_effective_date = now + timedelta(days=grace_days) if grace_days else None
    agreement.landlord_accepted_termination = role == UserRole.landlord.value
    agreement.tenant_accepted_termination = role == UserRole.tenant.value

    logger.info(f"Mutual termination of agreement {agreement.id} proposed by {role} {initiator_id}")

    body = UIMessages.field("Proposed by", role)
    if agreement.termination_effective_date:
        body += UIMessages.field("Proposed end", format_date(agreement.termination_effective_date))
    return await party_notifications(
        session, agreement, f"Mutual termination proposed for agreement #{agreement.id}", body
    )


async def _accept(
    session: AsyncSession,
    agreement: RentalAgreement,
    user_id: int,
    now: datetime
) -> Tuple[Optional[EvictionLog], List[NotificationRequested]]:
    role = party_role(agreement, user_id)
    if role == UserRole.landlord.value:
        if agreement.landlord_accepted_termination:
            raise ForbiddenError("You already accepted this termination", {"field": "landlord_accepted_termination"})
        agreement.landlord_accepted_termination = True
    else:
        if agreement.tenant_accepted_termination:
            raise ForbiddenError("You already accepted this termination", {"field": "tenant_accepted_termination"})
        agreement.tenant_accepted_termination = True

    await ensure_refunds_cleared(session, agreement.id, now.date())

    proposed_end = agreement.termination_effective_date
    if proposed_end is not None and proposed_end > now:
        log = EvictionLog(
            agreement_id=agreement.id,
            reason=TerminationReason.MUTUAL_AGREEMENT.value,
            status=EvictionStatus.warning.value,
            initiated_by=agreement.termination_requested_by,
            description=agreement.termination_description,
            warning_sent_at=now,
            grace_period_end=proposed_end
        )
        session.add(log)
        await session.flush()
        logger.info(f"Mutual termination of agreement {agreement.id} scheduled for {proposed_end} (log {log.id})")
        events = await party_notifications(
            session, agreement, f"Mutual termination agreed for agreement #{agreement.id}",
            UIMessages.field("Effective", format_date(proposed_end))
        )
        return log, events

    # No grace period: terminate now, keep an evicted log for the audit trail
    log = EvictionLog(
        agreement_id=agreement.id,
        reason=TerminationReason.MUTUAL_AGREEMENT.value,
        status=EvictionStatus.evicted.value,
        initiated_by=agreement.termination_requested_by,
        description=agreement.termination_description,
        warning_sent_at=now,
        grace_period_end=now
    )
    session.add(log)
    events = await finalize_agreement_termination(session, agreement, now)
    await session.flush()
    return log, events


async def accept_mutual_termination(
    session: AsyncSession,
    agreement_id: int,
    user_id: int,
    now: Optional[datetime] = None
) -> Optional[EvictionLog]:
    now = now or utcnow()

    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        apply_transition(agreement, AgreementEvent.REQUEST_TERMINATION)
        if not has_pending_request(agreement):
            raise ForbiddenError(
                "There is no pending mutual termination request",
                {"field": "termination_reason", "agreement_id": agreement.id}
            )
        log, events = await _accept(session, agreement, user_id, now)

    await get_dispatcher().publish(events)
    return log


async def cancel_mutual_request(
    session: AsyncSession,
    agreement: RentalAgreement,
    user_id: int
) -> List[NotificationRequested]:
    """Either party withdraws the request before both have accepted."""
    party_role(agreement, user_id)
    if not has_pending_request(agreement):
        raise ForbiddenError(
            "There is no pending mutual termination request",
            {"field": "termination_reason", "agreement_id": agreement.id}
        )
    clear_termination_request(agreement)
    logger.info(f"Mutual termination request on agreement {agreement.id} withdrawn by {user_id}")
    return await party_notifications(
        session, agreement, "Mutual termination withdrawn",
        f"The mutual termination request on agreement #{agreement.id} was withdrawn."
    )
