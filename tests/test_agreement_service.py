from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from conftest import NOW
from lease.database.models import Property, PropertyUnit, RentalAgreement, RentPayment
from lease.errors import ForbiddenError, NotFoundError, ValidationError
from lease.services import agreement_service


async def _property(session, owner_id, has_units=False):
    prop = Property(owner_id=owner_id, property_name="Lake Court", has_units=has_units)
    session.add(prop)
    await session.flush()
    unit_id = None
    if has_units:
        unit = PropertyUnit(property_id=prop.id, unit_number="1")
        session.add(unit)
        await session.flush()
        unit_id = unit.id
    await session.commit()
    return prop.id, unit_id


@pytest.mark.asyncio
async def test_one_open_agreement_per_unit(async_session, people):
    property_id, _ = await _property(async_session, people["landlord"])

    first = await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, None, 500)
    first_id = first.id

    with pytest.raises(ForbiddenError) as exc:
        await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, None, 600)
    assert exc.value.details["agreement_id"] == first_id

    await agreement_service.cancel_agreement(async_session, first_id, people["landlord"])
    second = await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, None, 600)
    assert second.status == "draft"


@pytest.mark.asyncio
async def test_draft_validation(async_session, people):
    property_id, unit_id = await _property(async_session, people["landlord"], has_units=True)

    with pytest.raises(ValidationError):
        await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, None, 500)
    with pytest.raises(ValidationError):
        await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, unit_id, -5)
    with pytest.raises(ForbiddenError):
        await agreement_service.create_draft_agreement(async_session, people["outsider"], property_id, unit_id, 500)
    with pytest.raises(NotFoundError):
        await agreement_service.create_draft_agreement(async_session, people["landlord"], 999, None, 500)

    agreement = await agreement_service.create_draft_agreement(
        async_session, people["landlord"], property_id, unit_id, 500
    )
    assert agreement.unit_id == unit_id


@pytest.mark.asyncio
async def test_tenant_only_attached_before_payment_request(async_session, people, reload):
    property_id, _ = await _property(async_session, people["landlord"])
    agreement = await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, None, 500)
    agreement_id = agreement.id

    with pytest.raises(ForbiddenError):
        await agreement_service.send_for_payment(async_session, agreement_id, people["landlord"])
    with pytest.raises(ValidationError):
        await agreement_service.attach_tenant(async_session, agreement_id, people["landlord"], people["admin"])

    await agreement_service.attach_tenant(async_session, agreement_id, people["landlord"], people["tenant"])
    await agreement_service.mark_ready(async_session, agreement_id, people["landlord"])
    await agreement_service.send_for_payment(async_session, agreement_id, people["landlord"])

    with pytest.raises(ForbiddenError):
        await agreement_service.attach_tenant(async_session, agreement_id, people["landlord"], people["outsider"])
    assert (await reload(RentalAgreement, agreement_id)).tenant_id == people["tenant"]


@pytest.mark.asyncio
async def test_cancel_detaches_tenant(async_session, people, notifications):
    property_id, _ = await _property(async_session, people["landlord"])
    agreement = await agreement_service.create_draft_agreement(async_session, people["landlord"], property_id, None, 500)
    await agreement_service.attach_tenant(async_session, agreement.id, people["landlord"], people["tenant"])
    await agreement_service.mark_ready(async_session, agreement.id, people["landlord"])
    await agreement_service.send_for_payment(async_session, agreement.id, people["landlord"])
    await agreement_service.accept_agreement(async_session, agreement.id, people["tenant"])
    notifications.clear()

    cancelled = await agreement_service.cancel_agreement(async_session, agreement.id, people["landlord"])

    assert cancelled.status == "cancelled"
    assert cancelled.tenant_id is None
    assert cancelled.tenant_accepted_agreement is False
    assert [n.user_id for n in notifications] == [people["tenant"]]


@pytest.mark.asyncio
async def test_active_agreement_cannot_be_cancelled(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement()

    with pytest.raises(ForbiddenError):
        await agreement_service.cancel_agreement(async_session, agreement_id, people["landlord"])


@pytest.mark.asyncio
async def test_complete_after_end_date(async_session, people, make_active_agreement, reload):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 1), 500, 0)])
    agreement = await reload(RentalAgreement, agreement_id)
    agreement.end_date = date(2025, 3, 15)
    await async_session.commit()

    with pytest.raises(ForbiddenError):
        await agreement_service.complete_agreement(async_session, agreement_id, NOW)

    done = await agreement_service.complete_agreement(
        async_session, agreement_id, datetime(2025, 3, 16, tzinfo=timezone.utc)
    )

    assert done.status == "completed"
    assert (await reload(Property, done.property_id)).status == "available"
    status = (await async_session.execute(
        select(RentPayment.status).where(RentPayment.rental_agreement_id == agreement_id)
    )).scalar_one()
    assert status == "cancelled"
