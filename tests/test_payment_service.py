from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from conftest import NOW
from lease.database.models import (
    Property, PropertyUnit, RentalAgreement, RentPayment, SecurityDeposit, GatewayPayment
)
from lease.errors import AuthError, ForbiddenError, ServerError, ValidationError
from lease.services import agreement_service
from lease.services.payment_service import record_initial_payment, record_payment


async def _count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar()


async def _obligations(session, agreement_id):
    result = await session.execute(
        select(RentPayment)
        .where(RentPayment.rental_agreement_id == agreement_id)
        .order_by(RentPayment.due_date)
    )
    return result.scalars().all()


@pytest.fixture
def pending_agreement(async_session, people):
    """Walk a lease through draft -> ready -> pending_payment and tenant acceptance."""
    async def _make(monthly_rent=500, security_deposit=200, has_units=False, accept=True):
        prop = Property(owner_id=people["landlord"], property_name="Hill View", has_units=has_units)
        async_session.add(prop)
        await async_session.flush()
        unit_id = None
        if has_units:
            unit = PropertyUnit(property_id=prop.id, unit_number="2B")
            async_session.add(unit)
            await async_session.flush()
            unit_id = unit.id
        await async_session.commit()

        agreement = await agreement_service.create_draft_agreement(
            async_session, people["landlord"], prop.id, unit_id, monthly_rent, security_deposit
        )
        await agreement_service.attach_tenant(async_session, agreement.id, people["landlord"], people["tenant"])
        await agreement_service.mark_ready(async_session, agreement.id, people["landlord"])
        await agreement_service.send_for_payment(async_session, agreement.id, people["landlord"])
        if accept:
            await agreement_service.accept_agreement(async_session, agreement.id, people["tenant"])
        return agreement.id, prop.id, unit_id

    return _make


@pytest.mark.asyncio
async def test_initial_payment_activates_lease(async_session, people, pending_agreement, reload, notifications):
    agreement_id, property_id, _ = await pending_agreement()
    notifications.clear()

    result = await record_initial_payment(async_session, agreement_id, people["tenant"], 700, now=NOW)

    assert result.agreement_status == "active"
    assert result.obligation.status == "completed"
    assert result.obligation.due_date == NOW.date()
    assert result.obligation.amount_paid == Decimal("500")
    assert result.obligation.transaction_id.startswith("FW_RENT_")
    assert result.deposit.status == "held"
    assert result.deposit.amount == Decimal("200")
    assert result.advances == [] and result.partial is None

    agreement = await reload(RentalAgreement, agreement_id)
    assert agreement.start_date == NOW.date()
    prop = await reload(Property, property_id)
    assert prop.status == "occupied"

    charge = (await async_session.execute(select(GatewayPayment))).scalar_one()
    assert charge.transaction_id == result.transaction_id
    assert charge.payment_type == "INITIAL_RENT_PAYMENT"
    assert {n.user_id for n in notifications} == {people["tenant"], people["landlord"]}


@pytest.mark.asyncio
async def test_initial_payment_below_minimum_writes_nothing(async_session, people, pending_agreement, reload):
    agreement_id, _, _ = await pending_agreement()

    with pytest.raises(ForbiddenError) as exc:
        await record_initial_payment(async_session, agreement_id, people["tenant"], "699.99", now=NOW)

    assert Decimal(exc.value.details["required"]) == Decimal("700")
    assert await _count(async_session, RentPayment) == 0
    assert await _count(async_session, SecurityDeposit) == 0
    assert await _count(async_session, GatewayPayment) == 0
    assert (await reload(RentalAgreement, agreement_id)).status == "pending_payment"


@pytest.mark.asyncio
async def test_initial_surplus_becomes_advances_and_partial(async_session, people, pending_agreement):
    agreement_id, _, _ = await pending_agreement()

    result = await record_initial_payment(async_session, agreement_id, people["tenant"], 700 + 1499, now=NOW)

    today = NOW.date()
    assert [o.due_date for o in result.advances] == [today + timedelta(days=30), today + timedelta(days=60)]
    assert result.partial.due_date == today + timedelta(days=90)
    assert result.partial.amount_paid == Decimal("499")
    assert result.partial.status == "partial"

    obligations = await _obligations(async_session, agreement_id)
    assert len(obligations) == 4
    assert sum(o.amount_paid for o in obligations) == Decimal("1999")
    assert {o.transaction_id for o in obligations} == {result.transaction_id}


@pytest.mark.asyncio
async def test_initial_payment_occupies_unit_not_property(async_session, people, pending_agreement, reload):
    agreement_id, property_id, unit_id = await pending_agreement(has_units=True)

    await record_initial_payment(async_session, agreement_id, people["tenant"], 700, now=NOW)

    assert (await reload(PropertyUnit, unit_id)).status == "occupied"
    assert (await reload(Property, property_id)).status == "available"


@pytest.mark.asyncio
async def test_initial_payment_preconditions(async_session, people, pending_agreement):
    agreement_id, _, _ = await pending_agreement(accept=False)

    with pytest.raises(AuthError):
        await record_initial_payment(async_session, agreement_id, people["outsider"], 700, now=NOW)
    with pytest.raises(ForbiddenError):
        await record_initial_payment(async_session, agreement_id, people["tenant"], 700, now=NOW)
    with pytest.raises(ValidationError):
        await record_initial_payment(async_session, agreement_id, people["tenant"], 0, now=NOW)

    await agreement_service.accept_agreement(async_session, agreement_id, people["tenant"])
    await record_initial_payment(async_session, agreement_id, people["tenant"], 700, now=NOW)
    with pytest.raises(AuthError):
        await record_initial_payment(async_session, agreement_id, people["tenant"], 700, now=NOW)


@pytest.mark.asyncio
async def test_manual_payment_pays_oldest_first(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[
        (date(2025, 1, 31), 500, 0, "pending"),
        (date(2025, 1, 1), 500, 0, "overdued"),
    ])

    result = await record_payment(async_session, agreement_id, people["landlord"], "landlord", 600, now=NOW)

    assert result.status == "paid"
    assert result.outstanding_balance == Decimal("400")
    assert result.transaction_id is None
    january, february = await _obligations(async_session, agreement_id)
    assert (january.status, january.amount_paid) == ("completed", Decimal("500"))
    assert (february.status, february.amount_paid) == ("partial", Decimal("100"))
    assert january.transaction_id.startswith("MANUAL-")
    assert january.transaction_id != february.transaction_id
    assert result.allocated_obligation_ids == [january.id, february.id]


@pytest.mark.asyncio
async def test_tenant_payment_goes_through_gateway(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 1), 500, 0)])

    result = await record_payment(async_session, agreement_id, people["tenant"], "tenant", 1500, now=NOW)

    assert result.status == "paid"
    obligations = await _obligations(async_session, agreement_id)
    assert [o.due_date for o in obligations] == [date(2025, 2, 1), date(2025, 3, 3), date(2025, 4, 2)]
    assert all(o.status == "completed" for o in obligations)
    assert {o.transaction_id for o in obligations} == {result.transaction_id}
    assert result.transaction_id.startswith("FW_RENT_")
    assert await _count(async_session, GatewayPayment) == 1


@pytest.mark.asyncio
async def test_payment_without_dues_is_advance(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 1), 500, 500)])

    result = await record_payment(async_session, agreement_id, people["landlord"], "landlord", 500, now=NOW)

    assert result.status == "advance"
    obligations = await _obligations(async_session, agreement_id)
    assert obligations[-1].due_date == date(2025, 3, 3)
    assert obligations[-1].status == "completed"


@pytest.mark.asyncio
async def test_small_payment_is_partial(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 1), 500, 0)])

    result = await record_payment(async_session, agreement_id, people["landlord"], "landlord", 120, now=NOW)

    assert result.status == "partial"
    assert result.outstanding_balance == Decimal("380")


@pytest.mark.asyncio
async def test_payment_authorization(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 1), 500, 0)])

    with pytest.raises(ForbiddenError):
        await record_payment(async_session, agreement_id, people["outsider"], "landlord", 100, now=NOW)
    with pytest.raises(AuthError):
        await record_payment(async_session, agreement_id, people["outsider"], "tenant", 100, now=NOW)
    with pytest.raises(ValidationError):
        await record_payment(async_session, agreement_id, people["admin"], "admin", 100, now=NOW)
    assert await _count(async_session, GatewayPayment) == 0


@pytest.mark.asyncio
async def test_amount_rounding_to_zero_is_rejected(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 1), 500, 0)])

    for amount in ("0.001", "0.004", 0.0049):
        with pytest.raises(ValidationError) as exc:
            await record_payment(async_session, agreement_id, people["tenant"], "tenant", amount, now=NOW)
        assert exc.value.details["field"] == "amount"

    assert await _count(async_session, GatewayPayment) == 0
    result = await record_payment(async_session, agreement_id, people["tenant"], "tenant", "0.01", now=NOW)
    assert result.status == "partial"


@pytest.mark.asyncio
async def test_unconfigured_rent_is_server_error(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(monthly_rent=0)

    with pytest.raises(ServerError):
        await record_payment(async_session, agreement_id, people["landlord"], "landlord", 100, now=NOW)
