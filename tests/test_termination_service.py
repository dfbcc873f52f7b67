from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import NOW
from lease.database.models import (
    EvictionLog, Property, PropertyUnit, RentalAgreement, RentPayment, SecurityDeposit
)
from lease.errors import AuthError, ForbiddenError
from lease.services.payment_service import record_payment
from lease.services.refund_service import refund_security_deposit
from lease.services.termination_service import (
    TerminationRef, initiate_termination, confirm_eviction, cancel_termination,
    auto_finalize_expired_grace_periods
)
from lease.services.billing_service import run_billing
from lease.services.eviction_service import check_eviction_eligibility

# Unpaid for more than a calendar month on NOW (2025-03-01)
LONG_OVERDUE = [(date(2025, 1, 1), 500, 500), (date(2025, 1, 31), 500, 0, "overdued")]


async def _logs(session, agreement_id):
    result = await session.execute(
        select(EvictionLog).where(EvictionLog.agreement_id == agreement_id).order_by(EvictionLog.id)
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_eligibility_uses_calendar_month_past_due(async_session, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[
        (date(2025, 2, 1), 500, 0, "overdued"),
        (date(2025, 3, 3), 500, 0, "overdued"),
    ])

    early = await check_eviction_eligibility(async_session, agreement_id, date(2025, 2, 28))
    assert not early.eligible
    assert early.eligible_from == date(2025, 3, 1)

    # A newer unpaid cycle does not reset the count
    later = await check_eviction_eligibility(async_session, agreement_id, date(2025, 3, 5))
    assert later.eligible
    assert later.due_date == date(2025, 2, 1)
    assert later.outstanding == Decimal("1000")


@pytest.mark.asyncio
async def test_non_payment_opens_warning_with_grace_period(
    async_session, people, make_active_agreement, reload, notifications
):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)

    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT",
        description="Two months behind", now=NOW
    )

    assert result.status == "warning"
    assert result.grace_period_end == NOW + timedelta(days=7)
    agreement = await reload(RentalAgreement, agreement_id)
    assert agreement.status == "active"
    assert agreement.termination_reason == "NON_PAYMENT"
    assert agreement.termination_requested_by == people["landlord"]
    assert {n.user_id for n in notifications} == {people["landlord"], people["tenant"]}


@pytest.mark.asyncio
async def test_non_payment_requires_a_month_of_arrears(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=[(date(2025, 2, 15), 500, 0)])

    with pytest.raises(ForbiddenError):
        await initiate_termination(async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW)
    assert await _logs(async_session, agreement_id) == []


@pytest.mark.asyncio
async def test_tenant_cannot_evict(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)

    with pytest.raises(ForbiddenError):
        await initiate_termination(async_session, agreement_id, people["tenant"], "tenant", "OWNER_REQUIREMENT", now=NOW)
    with pytest.raises(ForbiddenError):
        await initiate_termination(async_session, agreement_id, people["outsider"], "landlord", "NON_PAYMENT", now=NOW)


@pytest.mark.asyncio
async def test_refund_gate_blocks_until_deposit_refunded(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(security_deposit=200)

    with pytest.raises(ForbiddenError) as exc:
        await initiate_termination(
            async_session, agreement_id, people["landlord"], "landlord", "OWNER_REQUIREMENT", now=NOW
        )
    assert Decimal(exc.value.details["security_deposit"]) == Decimal("200")
    assert await _logs(async_session, agreement_id) == []

    await refund_security_deposit(async_session, agreement_id, people["landlord"], "refund")
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "OWNER_REQUIREMENT", grace_days=30, now=NOW
    )
    assert result.grace_period_end == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_only_one_open_case(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    await initiate_termination(async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW)

    with pytest.raises(ForbiddenError):
        await initiate_termination(
            async_session, agreement_id, people["landlord"], "landlord", "OWNER_REQUIREMENT", now=NOW
        )


@pytest.mark.asyncio
async def test_confirm_after_grace_terminates(async_session, people, make_active_agreement, reload):
    agreement_id = await make_active_agreement(security_deposit=300, obligations=[
        (date(2024, 12, 2), 500, 500),
        (date(2025, 1, 1), 500, 100),
        (date(2025, 1, 31), 500, 0, "overdued"),
    ])
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW
    )
    ref = TerminationRef.eviction(result.eviction_log_id)

    with pytest.raises(ForbiddenError):
        await confirm_eviction(async_session, ref, people["landlord"], now=NOW + timedelta(days=6))

    later = NOW + timedelta(days=7, minutes=1)
    with pytest.raises(ForbiddenError):
        await confirm_eviction(async_session, ref, people["tenant"], now=later)

    confirmed = await confirm_eviction(async_session, ref, people["landlord"], now=later)
    assert confirmed.status == "terminated"

    agreement = await reload(RentalAgreement, agreement_id)
    assert agreement.status == "terminated"
    assert agreement.termination_effective_date == later
    assert (await reload(EvictionLog, result.eviction_log_id)).status == "evicted"
    deposit = (await async_session.execute(
        select(SecurityDeposit).where(SecurityDeposit.rental_agreement_id == agreement_id)
    )).scalar_one()
    assert deposit.status == "forfeited"
    statuses = (await async_session.execute(
        select(RentPayment.status).where(RentPayment.rental_agreement_id == agreement_id)
        .order_by(RentPayment.due_date)
    )).scalars().all()
    assert statuses == ["completed", "cancelled", "cancelled"]
    assert (await reload(Property, agreement.property_id)).status == "available"


@pytest.mark.asyncio
async def test_single_terminal_eviction(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", grace_days=0, now=NOW
    )
    ref = TerminationRef.eviction(result.eviction_log_id)
    await confirm_eviction(async_session, ref, people["landlord"], now=NOW)

    with pytest.raises(ForbiddenError):
        await confirm_eviction(async_session, ref, people["landlord"], now=NOW)
    with pytest.raises(ForbiddenError):
        await initiate_termination(async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW)
    with pytest.raises(AuthError):
        await record_payment(async_session, agreement_id, people["landlord"], "landlord", 500, now=NOW)

    logs = await _logs(async_session, agreement_id)
    assert [log.status for log in logs] == ["evicted"]


@pytest.mark.asyncio
async def test_manual_confirm_rejects_when_rent_caught_up(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW
    )
    await record_payment(async_session, agreement_id, people["landlord"], "landlord", 500, now=NOW)

    with pytest.raises(ForbiddenError):
        await confirm_eviction(
            async_session, TerminationRef.eviction(result.eviction_log_id), people["landlord"],
            now=NOW + timedelta(days=8)
        )


@pytest.mark.asyncio
async def test_auto_finalize_only_expired_grace_periods(
    async_session, people, make_active_agreement, reload, notifications
):
    expired_id = await make_active_agreement(has_units=True, obligations=LONG_OVERDUE)
    running_id = await make_active_agreement(obligations=LONG_OVERDUE)
    expired = await initiate_termination(
        async_session, expired_id, people["landlord"], "landlord", "NON_PAYMENT", grace_days=3, now=NOW
    )
    running = await initiate_termination(
        async_session, running_id, people["landlord"], "landlord", "NON_PAYMENT", grace_days=30, now=NOW
    )
    notifications.clear()

    summary = await auto_finalize_expired_grace_periods(async_session, now=NOW + timedelta(days=4))

    assert summary.finalized_count == 1
    assert summary.failed_ids == []
    assert (await reload(RentalAgreement, expired_id)).status == "terminated"
    assert (await reload(EvictionLog, expired.eviction_log_id)).status == "evicted"
    unit_id = (await reload(RentalAgreement, expired_id)).unit_id
    assert (await reload(PropertyUnit, unit_id)).status == "available"

    assert (await reload(RentalAgreement, running_id)).status == "active"
    assert (await reload(EvictionLog, running.eviction_log_id)).status == "warning"
    assert len(notifications) == 2


@pytest.mark.asyncio
async def test_auto_finalize_resolves_cured_non_payment(async_session, people, make_active_agreement, reload):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW
    )
    await record_payment(async_session, agreement_id, people["tenant"], "tenant", 500, now=NOW)

    summary = await auto_finalize_expired_grace_periods(async_session, now=NOW + timedelta(days=8))

    assert summary.finalized_count == 0
    assert summary.resolved_count == 1
    assert (await reload(EvictionLog, result.eviction_log_id)).status == "resolved"
    agreement = await reload(RentalAgreement, agreement_id)
    assert agreement.status == "active"
    assert agreement.termination_reason is None


@pytest.mark.asyncio
async def test_auto_finalize_keeps_going_after_a_failure(async_session, people, make_active_agreement, reload):
    gated_id = await make_active_agreement(obligations=[(date(2025, 3, 1), 500, 500)])
    plain_id = await make_active_agreement(obligations=LONG_OVERDUE)
    gated = await initiate_termination(
        async_session, gated_id, people["landlord"], "landlord", "OWNER_REQUIREMENT", grace_days=1, now=NOW
    )
    await initiate_termination(
        async_session, plain_id, people["landlord"], "landlord", "NON_PAYMENT", grace_days=2, now=NOW
    )
    # Tenant prepays during the grace period, so the refund gate now blocks
    await record_payment(async_session, gated_id, people["tenant"], "tenant", 500, now=NOW)

    summary = await auto_finalize_expired_grace_periods(async_session, now=NOW + timedelta(days=3))

    assert summary.failed_ids == [gated.eviction_log_id]
    assert summary.finalized_count == 1
    assert (await reload(RentalAgreement, gated_id)).status == "active"
    assert (await reload(RentalAgreement, plain_id)).status == "terminated"


@pytest.mark.asyncio
async def test_cancel_during_grace_period(async_session, people, make_active_agreement, reload):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW
    )
    ref = TerminationRef.eviction(result.eviction_log_id)

    with pytest.raises(ForbiddenError):
        await cancel_termination(async_session, ref, people["tenant"], now=NOW)

    cancelled = await cancel_termination(async_session, ref, people["landlord"], reason="Payment plan agreed", now=NOW)

    assert cancelled.status == "cancelled"
    agreement = await reload(RentalAgreement, agreement_id)
    assert agreement.termination_reason is None
    assert agreement.status == "active"
    with pytest.raises(ForbiddenError):
        await cancel_termination(async_session, ref, people["landlord"], now=NOW)


@pytest.mark.asyncio
async def test_cancel_after_grace_is_rejected_but_admin_may_cancel_before(
    async_session, people, make_active_agreement
):
    first_id = await make_active_agreement(obligations=LONG_OVERDUE)
    second_id = await make_active_agreement(obligations=LONG_OVERDUE)
    first = await initiate_termination(async_session, first_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW)
    second = await initiate_termination(async_session, second_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW)

    with pytest.raises(ForbiddenError):
        await cancel_termination(
            async_session, TerminationRef.eviction(first.eviction_log_id), people["landlord"],
            now=NOW + timedelta(days=8)
        )

    result = await cancel_termination(
        async_session, TerminationRef.eviction(second.eviction_log_id), people["admin"], now=NOW
    )
    assert result.status == "cancelled"


@pytest.mark.asyncio
async def test_billing_during_grace_period_does_not_drop_eviction(
    async_session, people, make_active_agreement, reload
):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", now=NOW
    )
    assert (await reload(EvictionLog, result.eviction_log_id)).arrears_due_date == date(2025, 1, 31)

    # Next cycle (Mar 2) is billed and left unpaid
    assert await run_billing(async_session, date(2025, 3, 9)) == 1

    summary = await auto_finalize_expired_grace_periods(async_session, now=NOW + timedelta(days=8))

    assert summary.finalized_count == 1
    assert summary.resolved_count == 0
    assert (await reload(EvictionLog, result.eviction_log_id)).status == "evicted"
    assert (await reload(RentalAgreement, agreement_id)).status == "terminated"


@pytest.mark.asyncio
async def test_non_payment_opens_after_newer_cycle_was_billed(async_session, people, make_active_agreement, reload):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    await run_billing(async_session, date(2025, 3, 5))

    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT",
        now=NOW + timedelta(days=4)
    )

    log = await reload(EvictionLog, result.eviction_log_id)
    assert log.status == "warning"
    assert log.arrears_due_date == date(2025, 1, 31)


@pytest.mark.asyncio
async def test_admin_may_confirm_eviction(async_session, people, make_active_agreement):
    agreement_id = await make_active_agreement(obligations=LONG_OVERDUE)
    result = await initiate_termination(
        async_session, agreement_id, people["landlord"], "landlord", "NON_PAYMENT", grace_days=0, now=NOW
    )
    ref = TerminationRef.eviction(result.eviction_log_id)

    with pytest.raises(ForbiddenError):
        await confirm_eviction(async_session, ref, people["outsider"], now=NOW)

    confirmed = await confirm_eviction(async_session, ref, people["admin"], now=NOW)
    assert confirmed.status == "terminated"
