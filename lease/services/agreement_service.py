"""
Agreement lifecycle: draft -> ready -> pending_payment -> active -> completed,
plus the shared helpers every other service uses to lock the agreement row
and to flip property/unit occupancy.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from lease.database.core import transaction, utcnow
from lease.database.models import (
    RentalAgreement, Property, PropertyUnit, User, RentPayment,
    PropertyStatus, RentPaymentStatus, UserRole,
    TERMINAL_AGREEMENT_STATUSES, OUTSTANDING_STATUSES
)
from lease.errors import NotFoundError, ForbiddenError, ValidationError, AuthError
from lease.schemas.validation import AgreementDraftInput, validate
from lease.services.notification_service import notification_for, get_dispatcher
from lease.services.state_machine import AgreementEvent, agreement_transition

logger = logging.getLogger(__name__)


async def lock_agreement(session: AsyncSession, agreement_id: int) -> RentalAgreement:
    """
    SELECT ... FOR UPDATE on the agreement row.

    ``populate_existing`` refreshes an instance already in the identity map, so
    status checks made after the lock see the committed row.
    """
    stmt = (
        select(RentalAgreement)
        .where(RentalAgreement.id == agreement_id, RentalAgreement.is_deleted == False)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    agreement = (await session.execute(stmt)).scalar_one_or_none()
    if not agreement:
        raise NotFoundError(f"Agreement {agreement_id} not found", {"agreement_id": agreement_id})
    return agreement


async def get_user_or_raise(session: AsyncSession, user_id: Optional[int]) -> User:
    user = await session.get(User, user_id) if user_id is not None else None
    if not user:
        raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
    return user


def require_owner(agreement: RentalAgreement, user_id: int):
    if agreement.owner_id != user_id:
        raise ForbiddenError(
            "Only the landlord of this agreement can do this",
            {"field": "owner_id", "agreement_id": agreement.id, "user_id": user_id}
        )


def require_tenant(agreement: RentalAgreement, user_id: int):
    if agreement.tenant_id is None or agreement.tenant_id != user_id:
        raise AuthError(
            "You are not the tenant of this agreement",
            {"field": "tenant_id", "agreement_id": agreement.id, "user_id": user_id}
        )


def apply_transition(agreement: RentalAgreement, event: AgreementEvent) -> str:
    new_status = agreement_transition(agreement.status, event)
    if new_status != agreement.status:
        logger.info(f"Agreement {agreement.id}: {agreement.status} -> {new_status} ({event.value})")
        agreement.status = new_status
    else:
        # Guard events still bump version_id so a concurrent writer gets a conflict
        flag_modified(agreement, "status")
    return new_status


async def set_occupancy(session: AsyncSession, agreement: RentalAgreement, status: PropertyStatus):
    """Mark the unit (for multi-unit properties) or the whole property."""
    prop = await session.get(Property, agreement.property_id, with_for_update=True)
    if not prop:
        raise NotFoundError(f"Property {agreement.property_id} not found", {"property_id": agreement.property_id})

    if prop.has_units and agreement.unit_id is not None:
        unit = await session.get(PropertyUnit, agreement.unit_id, with_for_update=True)
        if not unit:
            raise NotFoundError(f"Unit {agreement.unit_id} not found", {"unit_id": agreement.unit_id})
        unit.status = status.value
        logger.info(f"Unit {unit.id} of property {prop.id} is now {status.value}")
    else:
        prop.status = status.value
        logger.info(f"Property {prop.id} is now {status.value}")


async def cancel_unpaid_obligations(session: AsyncSession, agreement_id: int) -> int:
    result = await session.execute(
        select(RentPayment)
        .where(
            RentPayment.rental_agreement_id == agreement_id,
            RentPayment.status.in_(OUTSTANDING_STATUSES),
            RentPayment.is_deleted == False
        )
        .with_for_update()
    )
    unpaid = result.scalars().all()
    for obligation in unpaid:
        obligation.status = RentPaymentStatus.cancelled.value
    if unpaid:
        logger.info(f"Cancelled {len(unpaid)} unpaid obligation(s) of agreement {agreement_id}")
    return len(unpaid)


async def create_draft_agreement(
    session: AsyncSession,
    owner_id: int,
    property_id: int,
    unit_id: Optional[int],
    monthly_rent,
    security_deposit=Decimal("0"),
    end_date: Optional[date] = None
) -> RentalAgreement:
    data = validate(
        AgreementDraftInput,
        monthly_rent=monthly_rent,
        security_deposit=security_deposit,
        end_date=end_date
    )

    async with transaction(session):
        # LOCK PROPERTY ROW so two drafts for the same unit cannot both pass the check
        prop = await session.get(Property, property_id, with_for_update=True)
        if not prop:
            raise NotFoundError(f"Property {property_id} not found", {"property_id": property_id})
        if prop.owner_id != owner_id:
            raise ForbiddenError("You do not own this property", {"field": "owner_id", "property_id": property_id})

        if unit_id is not None:
            unit = await session.get(PropertyUnit, unit_id)
            if not unit or unit.property_id != property_id:
                raise ValidationError(
                    f"Unit {unit_id} does not belong to property {property_id}",
                    {"field": "unit_id", "unit_id": unit_id}
                )
        elif prop.has_units:
            raise ValidationError("This property has units, pick one", {"field": "unit_id"})

        unit_filter = RentalAgreement.unit_id.is_(None) if unit_id is None else RentalAgreement.unit_id == unit_id
        existing = await session.execute(
            select(RentalAgreement.id).where(
                RentalAgreement.property_id == property_id,
                unit_filter,
                RentalAgreement.is_deleted == False,
                RentalAgreement.status.not_in(TERMINAL_AGREEMENT_STATUSES)
            )
        )
        existing_id = existing.scalars().first()
        if existing_id is not None:
            raise ForbiddenError(
                "An open agreement already exists for this property/unit",
                {"field": "property_id", "agreement_id": existing_id}
            )

        agreement = RentalAgreement(
            property_id=property_id,
            unit_id=unit_id,
            owner_id=owner_id,
            monthly_rent=data.monthly_rent,
            security_deposit=data.security_deposit,
            end_date=data.end_date,
            status="draft",
            tenant_accepted_agreement=False,
            landlord_accepted_termination=False,
            tenant_accepted_termination=False,
            did_admin_approve_breach=False,
            is_deleted=False
        )
        session.add(agreement)
        await session.flush()

    logger.info(f"Draft agreement {agreement.id} created for property {property_id} unit {unit_id}")
    return agreement


async def attach_tenant(session: AsyncSession, agreement_id: int, owner_id: int, tenant_id: int) -> RentalAgreement:
    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_owner(agreement, owner_id)
        apply_transition(agreement, AgreementEvent.ATTACH_TENANT)

        tenant = await get_user_or_raise(session, tenant_id)
        if tenant.role != UserRole.tenant.value:
            raise ValidationError(f"User {tenant_id} is not a tenant", {"field": "tenant_id"})

        agreement.tenant_id = tenant.id
        agreement.tenant_accepted_agreement = False
        events = notification_for(
            tenant, "New rental agreement",
            f"You were added to rental agreement #{agreement.id}."
        )

    await get_dispatcher().publish(events)
    return agreement


async def mark_ready(session: AsyncSession, agreement_id: int, owner_id: int) -> RentalAgreement:
    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_owner(agreement, owner_id)
        apply_transition(agreement, AgreementEvent.MARK_READY)
    return agreement


async def send_for_payment(session: AsyncSession, agreement_id: int, owner_id: int) -> RentalAgreement:
    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_owner(agreement, owner_id)
        if agreement.tenant_id is None:
            raise ForbiddenError("Attach a tenant before requesting payment", {"field": "tenant_id"})
        if Decimal(agreement.monthly_rent or 0) <= 0:
            raise ValidationError("Monthly rent must be positive", {"field": "monthly_rent"})
        apply_transition(agreement, AgreementEvent.REQUEST_PAYMENT)
        tenant = await session.get(User, agreement.tenant_id)
        events = notification_for(
            tenant, "Agreement ready for payment",
            f"Agreement #{agreement.id} is waiting for your acceptance and first payment."
        )

    await get_dispatcher().publish(events)
    return agreement


async def accept_agreement(session: AsyncSession, agreement_id: int, tenant_id: int) -> RentalAgreement:
    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_tenant(agreement, tenant_id)
        apply_transition(agreement, AgreementEvent.ACCEPT)
        agreement.tenant_accepted_agreement = True
        owner = await session.get(User, agreement.owner_id)
        events = notification_for(
            owner, "Agreement accepted",
            f"The tenant accepted agreement #{agreement.id}."
        )

    await get_dispatcher().publish(events)
    return agreement


async def cancel_agreement(session: AsyncSession, agreement_id: int, owner_id: int) -> RentalAgreement:
    """Cancel before activation; the tenant is detached."""
    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        require_owner(agreement, owner_id)
        apply_transition(agreement, AgreementEvent.CANCEL)

        former_tenant = await session.get(User, agreement.tenant_id) if agreement.tenant_id else None
        agreement.tenant_id = None
        agreement.tenant_accepted_agreement = False
        events = notification_for(
            former_tenant, "Agreement cancelled",
            f"Rental agreement #{agreement.id} was cancelled by the landlord."
        )

    await get_dispatcher().publish(events)
    return agreement


async def complete_agreement(
    session: AsyncSession,
    agreement_id: int,
    timestamp: Optional[datetime] = None
) -> RentalAgreement:
    """Close an active agreement whose end date has passed."""
    timestamp = timestamp or utcnow()

    async with transaction(session):
        agreement = await lock_agreement(session, agreement_id)
        if agreement.end_date is None or agreement.end_date >= timestamp.date():
            raise ForbiddenError(
                "Agreement has not reached its end date",
                {"field": "end_date", "agreement_id": agreement.id}
            )
        apply_transition(agreement, AgreementEvent.COMPLETE)
        await cancel_unpaid_obligations(session, agreement.id)
        await set_occupancy(session, agreement, PropertyStatus.available)

        events: List = []
        for user_id in (agreement.owner_id, agreement.tenant_id):
            user = await session.get(User, user_id) if user_id else None
            events += notification_for(
                user, "Agreement completed",
                f"Rental agreement #{agreement.id} ended on {agreement.end_date}."
            )

    await get_dispatcher().publish(events)
    return agreement
