"""
Breach of agreement / illegal activity cases.

The landlord opens a case with evidence, an admin reviews it, and only an
``eviction_recommended`` review lets the landlord confirm the eviction.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lease.config import config
from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentalAgreement, BreachLog, User,
    AgreementStatus, BreachStatus, TerminationReason, UserRole
)
from lease.errors import ForbiddenError, NotFoundError
from lease.schemas.validation import BreachReviewInput, validate
from lease.services.agreement_service import lock_agreement, require_owner, get_user_or_raise
from lease.services.finalizer_service import (
    finalize_agreement_termination, clear_termination_request, party_notifications
)
from lease.services.notification_service import NotificationRequested, notification_for, get_dispatcher
from lease.services.refund_service import ensure_refunds_cleared
from lease.services.state_machine import BreachEvent, BREACH_REVIEW_EVENTS, breach_transition
from lease.utils.ui import UIMessages, format_date

logger = logging.getLogger(__name__)

BREACH_REASONS = (
    TerminationReason.BREACH_OF_AGREEMENT.value,
    TerminationReason.ILLEGAL_ACTIVITY.value,
)


@dataclass
class EvidenceFile:
    filename: str
    content: bytes


class LocalEvidenceStorage:
    """Stores evidence under EVIDENCE_DIR/<agreement_id>/"""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir or config.EVIDENCE_DIR)

    def path_for(self, agreement_id: int, evidence: EvidenceFile) -> Path:
        name = f"{secrets.token_hex(6)}_{Path(evidence.filename).name}"
        return self.base_dir / str(agreement_id) / name

    async def write(self, path: Path, evidence: EvidenceFile) -> str:
        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(evidence.content)

        await asyncio.to_thread(_write)
        logger.info(f"Evidence saved to {path}")
        return str(path)

    async def discard(self, path) -> None:
        """Remove a file whose breach case was never committed."""
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        logger.info(f"Evidence {path} discarded")


evidence_storage = LocalEvidenceStorage()


def _set_status(log: BreachLog, event: BreachEvent):
    new_status = breach_transition(log.status, event)
    logger.info(f"Breach case {log.id}: {log.status} -> {new_status}")
    log.status = new_status


async def _admins(session: AsyncSession) -> List[User]:
    result = await session.execute(
        select(User).where(User.role == UserRole.admin.value, User.is_active == True)
    )
    return list(result.scalars().all())


async def lock_breach_log(session: AsyncSession, log_id: int) -> BreachLog:
    log = (await session.execute(
        select(BreachLog)
        .where(BreachLog.id == log_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not log:
        raise NotFoundError(f"Breach case {log_id} not found", {"breach_log_id": log_id})
    return log


async def initiate_breach(
    session: AsyncSession,
    agreement: RentalAgreement,
    initiator_id: int,
    reason: TerminationReason,
    description: Optional[str],
    proof_file: Optional[EvidenceFile],
    now: datetime,
    storage: Optional[LocalEvidenceStorage] = None
) -> Tuple[BreachLog, List[NotificationRequested]]:
    require_owner(agreement, initiator_id)
    if proof_file is None or not proof_file.content:
        raise ForbiddenError(
            "Evidence file is required for this termination reason",
            {"field": "proof_file", "agreement_id": agreement.id}
        )

    storage = storage or evidence_storage
    file_path = storage.path_for(agreement.id, proof_file)
    log = BreachLog(
        agreement_id=agreement.id,
        reason=reason.value,
        status=BreachStatus.warning.value,
        description=description,
        file_path=str(file_path),
        warning_sent_at=now
    )
    session.add(log)
    await session.flush()

    logger.info(f"Breach case {log.id} ({reason.value}) opened for agreement {agreement.id}")

    events = await party_notifications(
        session, agreement,
        f"Breach reported on agreement #{agreement.id}",
        UIMessages.field("Reason", reason.value) + "An administrator will review the case."
    )
    for admin in await _admins(session):
        events += notification_for(
            admin, "Breach case awaiting review",
            f"Breach case #{log.id} on agreement #{agreement.id} needs a review."
        )

    # Evidence hits the disk only after the case row is flushed
    await storage.write(file_path, proof_file)
    return log, events


async def review_breach(
    session: AsyncSession,
    breach_log_id: int,
    admin_id: int,
    outcome,
    remedy_days: Optional[int] = None,
    now: Optional[datetime] = None
) -> BreachLog:
    data = validate(BreachReviewInput, outcome=outcome, remedy_days=remedy_days)
    now = now or utcnow()

    async with transaction(session):
        admin = await get_user_or_raise(session, admin_id)
        if admin.role != UserRole.admin.value:
            raise ForbiddenError("Only an administrator can review breach cases", {"field": "role"})

        log = await lock_breach_log(session, breach_log_id)
        agreement = await lock_agreement(session, log.agreement_id)
        if agreement.status != AgreementStatus.active.value:
            raise ForbiddenError(
                f"Agreement is {agreement.status}",
                {"field": "status", "agreement_id": agreement.id}
            )

        _set_status(log, BREACH_REVIEW_EVENTS[data.outcome.value])

        if data.outcome == BreachStatus.pending_remedy:
            days = data.remedy_days or config.BREACH_REMEDY_DAYS
            log.remedy_deadline = now + timedelta(days=days)
            agreement.did_admin_approve_breach = False
            body = UIMessages.field("Remedy deadline", format_date(log.remedy_deadline))
        elif data.outcome == BreachStatus.resolved:
            clear_termination_request(agreement)
            body = "The case was closed without further action."
        else:
            agreement.did_admin_approve_breach = True
            body = "Eviction recommended. The landlord may now confirm the eviction."

        events = await party_notifications(session, agreement, f"Breach case #{log.id}: {log.status}", body)

    await get_dispatcher().publish(events)
    return log


async def resolve_breach(
    session: AsyncSession,
    breach_log_id: int,
    landlord_id: int,
    now: Optional[datetime] = None
) -> BreachLog:
    """Landlord withdraws the case before confirming the eviction."""
    async with transaction(session):
        log = await lock_breach_log(session, breach_log_id)
        agreement = await lock_agreement(session, log.agreement_id)
        require_owner(agreement, landlord_id)
        _set_status(log, BreachEvent.RESOLVE)
        clear_termination_request(agreement)

        events = await party_notifications(
            session, agreement, f"Breach case #{log.id} resolved",
            "The landlord resolved the case, the agreement continues."
        )

    await get_dispatcher().publish(events)
    return log


async def confirm_breach_eviction(
    session: AsyncSession,
    log: BreachLog,
    agreement: RentalAgreement,
    landlord_id: int,
    now: datetime
) -> List[NotificationRequested]:
    """Runs inside the caller's transaction with both rows locked."""
    require_owner(agreement, landlord_id)
    if not agreement.did_admin_approve_breach:
        raise ForbiddenError(
            "Eviction needs an administrator's recommendation",
            {"field": "did_admin_approve_breach", "breach_log_id": log.id}
        )
    _set_status(log, BreachEvent.CONFIRM)
    await ensure_refunds_cleared(session, agreement.id, now.date())
    return await finalize_agreement_termination(session, agreement, now)


async def cancel_breach(
    session: AsyncSession,
    log: BreachLog,
    agreement: RentalAgreement,
    canceller_id: int
):
    if canceller_id != agreement.owner_id:
        user = await session.get(User, canceller_id)
        if user is None or user.role != UserRole.admin.value:
            raise ForbiddenError("You cannot cancel this breach case", {"field": "user_id", "breach_log_id": log.id})
    _set_status(log, BreachEvent.CANCEL)
    clear_termination_request(agreement)
