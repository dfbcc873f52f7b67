"""
Termination entry points.

initiate_termination dispatches on the reason:
- NON_PAYMENT: landlord, rent one month overdue, eviction log with grace period
- BREACH_OF_AGREEMENT / ILLEGAL_ACTIVITY: landlord with evidence, admin review
- OWNER_REQUIREMENT: landlord, refund gate first, eviction log with grace period
- MUTUAL_AGREEMENT: either party proposes, the other accepts

confirm_eviction / cancel_termination act on a TerminationRef, and
auto_finalize_expired_grace_periods is what the scheduler runs.
"""
import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentalAgreement, EvictionLog, AgreementStatus, EvictionStatus, TerminationReason, UserRole
)
from lease.errors import ForbiddenError, ValidationError
from lease.schemas.validation import TerminationInput, validate
from lease.services import breach_service, eviction_service, mutual_termination_service
from lease.services.agreement_service import lock_agreement, apply_transition
from lease.services.breach_service import EvidenceFile, LocalEvidenceStorage
from lease.services.eviction_service import arrears_cleared, check_eviction_eligibility
from lease.services.finalizer_service import (
    ensure_no_open_case, record_termination_request, clear_termination_request,
    finalize_agreement_termination, party_notifications
)
from lease.services.notification_service import NotificationRequested, get_dispatcher
from lease.services.refund_service import ensure_refunds_cleared
from lease.services.state_machine import AgreementEvent, EvictionEvent, eviction_transition

logger = logging.getLogger(__name__)

# Reasons that may not finalize while a deposit or prepaid rent is unrefunded
REFUND_GATED_REASONS = (
    TerminationReason.OWNER_REQUIREMENT.value,
    TerminationReason.MUTUAL_AGREEMENT.value,
    TerminationReason.BREACH_OF_AGREEMENT.value,
    TerminationReason.ILLEGAL_ACTIVITY.value,
)


class TerminationRef(NamedTuple):
    kind: str  # eviction | breach | mutual (id is the agreement id)
    id: int

    EVICTION = "eviction"
    BREACH = "breach"
    MUTUAL = "mutual"

    @classmethod
    def eviction(cls, log_id: int) -> "TerminationRef":
        return cls(cls.EVICTION, log_id)

    @classmethod
    def breach(cls, log_id: int) -> "TerminationRef":
        return cls(cls.BREACH, log_id)

    @classmethod
    def mutual(cls, agreement_id: int) -> "TerminationRef":
        return cls(cls.MUTUAL, agreement_id)


class TerminationResult(NamedTuple):
    agreement_id: int
    reason: str
    status: str
    eviction_log_id: Optional[int] = None
    breach_log_id: Optional[int] = None
    grace_period_end: Optional[datetime] = None


class ConfirmResult(NamedTuple):
    agreement_id: int
    status: str


class CancelResult(NamedTuple):
    agreement_id: int
    status: str


class AutoFinalizeSummary(NamedTuple):
    finalized_count: int
    resolved_count: int
    cancelled_count: int
    failed_ids: List[int]


async def initiate_termination(
    session: AsyncSession,
    agreement_id: int,
    initiator_id: int,
    initiator_role,
    reason,
    description: Optional[str] = None,
    grace_days: Optional[int] = None,
    proof_file: Optional[EvidenceFile] = None,
    now: Optional[datetime] = None,
    storage: Optional[LocalEvidenceStorage] = None
) -> TerminationResult:
    data = validate(
        TerminationInput,
        initiator_role=initiator_role,
        reason=reason,
        description=description,
        grace_days=grace_days
    )
    now = now or utcnow()
    role = data.initiator_role.value
    reason = data.reason

    evidence_path = None
    try:
        async with transaction(session):
            agreement = await lock_agreement(session, agreement_id)
            apply_transition(agreement, AgreementEvent.REQUEST_TERMINATION)

            if reason == TerminationReason.MUTUAL_AGREEMENT:
                if mutual_termination_service.party_role(agreement, initiator_id) != role:
                    raise ForbiddenError("Role does not match your part in this agreement", {"field": "initiator_role"})
            elif role != UserRole.landlord.value:
                raise ForbiddenError(
                    f"Only the landlord can terminate for {reason.value}",
                    {"field": "initiator_role", "reason": reason.value}
                )

            await ensure_no_open_case(session, agreement)

            if reason == TerminationReason.MUTUAL_AGREEMENT:
                events = await mutual_termination_service.initiate_mutual(
                    session, agreement, initiator_id, data.description, data.grace_days, now
                )
                result = TerminationResult(agreement.id, reason.value, "awaiting_acceptance")
            elif reason.value in breach_service.BREACH_REASONS:
                log, events = await breach_service.initiate_breach(
                    session, agreement, initiator_id, reason, data.description, proof_file, now, storage
                )
                evidence_path = log.file_path
                record_termination_request(agreement, initiator_id, role, reason.value, data.description, now)
                result = TerminationResult(agreement.id, reason.value, log.status, breach_log_id=log.id)
            else:
                if reason == TerminationReason.NON_PAYMENT:
                    log, events = await eviction_service.initiate_non_payment(
                        session, agreement, initiator_id, data.description, data.grace_days, now
                    )
                else:
                    log, events = await eviction_service.initiate_owner_requirement(
                        session, agreement, initiator_id, data.description, data.grace_days, now
                    )
                record_termination_request(agreement, initiator_id, role, reason.value, data.description, now)
                result = TerminationResult(
                    agreement.id, reason.value, log.status,
                    eviction_log_id=log.id, grace_period_end=log.grace_period_end
                )
    except Exception:
        if evidence_path is not None:
            await (storage or breach_service.evidence_storage).discard(evidence_path)
        raise

    await get_dispatcher().publish(events)
    return result


async def _finalize_eviction(
    session: AsyncSession,
    log: EvictionLog,
    agreement: RentalAgreement,
    now: datetime,
    automatic: bool
) -> List[NotificationRequested]:
    """
    Shared by manual confirmation and the scheduler. Re-checks the reason's
    precondition on the locked rows before terminating.
    """
    if automatic and agreement.status != AgreementStatus.active.value:
        log.status = eviction_transition(log.status, EvictionEvent.CANCEL)
        logger.info(f"Eviction log {log.id} cancelled, agreement {agreement.id} is {agreement.status}")
        return []

    new_status = eviction_transition(log.status, EvictionEvent.FINALIZE)

    if log.reason == TerminationReason.NON_PAYMENT.value:
        if log.arrears_due_date is not None:
            cured = await arrears_cleared(session, agreement.id, log.arrears_due_date)
        else:
            cured = not (await check_eviction_eligibility(session, agreement.id, now.date())).eligible
        if cured:
            if not automatic:
                raise ForbiddenError(
                    "The rent arrears this eviction was opened for have been paid",
                    {"field": "termination_reason", "eviction_log_id": log.id}
                )
            log.status = eviction_transition(log.status, EvictionEvent.RESOLVE)
            clear_termination_request(agreement)
            logger.info(f"Eviction log {log.id} resolved, rent for agreement {agreement.id} was caught up")
            return await party_notifications(
                session, agreement, "Eviction resolved",
                f"The overdue rent on agreement #{agreement.id} was paid, the eviction was dropped."
            )
    elif log.reason in REFUND_GATED_REASONS:
        await ensure_refunds_cleared(session, agreement.id, now.date())

    log.status = new_status
    return await finalize_agreement_termination(session, agreement, now)


async def confirm_eviction(
    session: AsyncSession,
    ref: TerminationRef,
    confirmer_id: int,
    now: Optional[datetime] = None
) -> ConfirmResult:
    now = now or utcnow()

    if ref.kind == TerminationRef.MUTUAL:
        await mutual_termination_service.accept_mutual_termination(session, ref.id, confirmer_id, now)
        agreement = await session.get(RentalAgreement, ref.id)
        return ConfirmResult(agreement.id, agreement.status)

    async with transaction(session):
        if ref.kind == TerminationRef.EVICTION:
            log = await eviction_service.lock_eviction_log(session, ref.id)
            agreement = await lock_agreement(session, log.agreement_id)
            await eviction_service.require_can_confirm(session, agreement, log, confirmer_id)
            eviction_transition(log.status, EvictionEvent.FINALIZE)
            eviction_service.require_grace_period_over(log, now)
            events = await _finalize_eviction(session, log, agreement, now, automatic=False)
        elif ref.kind == TerminationRef.BREACH:
            log = await breach_service.lock_breach_log(session, ref.id)
            agreement = await lock_agreement(session, log.agreement_id)
            events = await breach_service.confirm_breach_eviction(session, log, agreement, confirmer_id, now)
        else:
            raise ValidationError(f"Unknown termination kind '{ref.kind}'", {"field": "kind"})

    await get_dispatcher().publish(events)
    return ConfirmResult(agreement.id, agreement.status)


async def cancel_termination(
    session: AsyncSession,
    ref: TerminationRef,
    canceller_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> CancelResult:
    now = now or utcnow()

    async with transaction(session):
        if ref.kind == TerminationRef.EVICTION:
            log = await eviction_service.lock_eviction_log(session, ref.id)
            agreement = await lock_agreement(session, log.agreement_id)
            await eviction_service.require_can_cancel(session, agreement, log, canceller_id)
            new_status = eviction_transition(log.status, EvictionEvent.CANCEL)
            eviction_service.require_grace_period_running(log, now)
            log.status = new_status
            clear_termination_request(agreement)
            status = log.status
        elif ref.kind == TerminationRef.BREACH:
            log = await breach_service.lock_breach_log(session, ref.id)
            agreement = await lock_agreement(session, log.agreement_id)
            await breach_service.cancel_breach(session, log, agreement, canceller_id)
            status = log.status
        elif ref.kind == TerminationRef.MUTUAL:
            agreement = await lock_agreement(session, ref.id)
            await mutual_termination_service.cancel_mutual_request(session, agreement, canceller_id)
            status = EvictionStatus.cancelled.value
        else:
            raise ValidationError(f"Unknown termination kind '{ref.kind}'", {"field": "kind"})

        logger.info(f"Termination {ref.kind} #{ref.id} cancelled by {canceller_id}")
        events = await party_notifications(
            session, agreement, "Termination cancelled",
            eviction_service.cancellation_notice(agreement, reason)
        )

    await get_dispatcher().publish(events)
    return CancelResult(agreement.id, status)


async def auto_finalize_expired_grace_periods(
    session: AsyncSession,
    now: Optional[datetime] = None
) -> AutoFinalizeSummary:
    """
    Finalize every eviction log whose grace period has passed.

    Each log runs in its own transaction; a failure is logged and the next
    log is processed.
    """
    now = now or utcnow()

    result = await session.execute(
        select(EvictionLog.id)
        .where(
            EvictionLog.status == EvictionStatus.warning.value,
            EvictionLog.grace_period_end <= now
        )
        .order_by(EvictionLog.grace_period_end, EvictionLog.id)
    )
    log_ids = list(result.scalars().all())
    await session.commit()

    finalized = resolved = cancelled = 0
    failed: List[int] = []

    for log_id in log_ids:
        try:
            async with transaction(session):
                log = await eviction_service.lock_eviction_log(session, log_id)
                if log.status != EvictionStatus.warning.value:
                    continue
                agreement = await lock_agreement(session, log.agreement_id)
                events = await _finalize_eviction(session, log, agreement, now, automatic=True)
                outcome = log.status
        except Exception as e:
            logger.error(f"Failed to finalize eviction log {log_id}: {e}")
            failed.append(log_id)
            continue

        if outcome == EvictionStatus.evicted.value:
            finalized += 1
        elif outcome == EvictionStatus.resolved.value:
            resolved += 1
        else:
            cancelled += 1
        await get_dispatcher().publish(events)

    if log_ids:
        logger.info(
            f"Grace period check: {finalized} finalized, {resolved} resolved, "
            f"{cancelled} cancelled, {len(failed)} failed"
        )
    return AutoFinalizeSummary(finalized, resolved, cancelled, failed)
