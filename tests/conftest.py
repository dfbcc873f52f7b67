import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from lease.database.core import Base
from lease.database.models import (
    User, Property, PropertyUnit, RentalAgreement, RentPayment, SecurityDeposit,
    AgreementStatus, DepositStatus, PropertyStatus, RentPaymentStatus, UserRole
)
from lease.services.breach_service import LocalEvidenceStorage
from lease.services.notification_service import NotificationChannel, setup_notifications
from lease.utils.period import format_period

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingChannel(NotificationChannel):
    def __init__(self):
        self.sent = []

    async def send(self, event):
        self.sent.append(event)


@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(async_engine):
    session_factory = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def notifications():
    channel = RecordingChannel()
    setup_notifications(channel=channel)
    yield channel.sent
    setup_notifications()


@pytest.fixture
def evidence_storage(tmp_path):
    return LocalEvidenceStorage(tmp_path / "evidence")


@pytest_asyncio.fixture
async def people(async_session):
    landlord = User(full_name="Lara Landlord", role=UserRole.landlord.value, tg_id=1001)
    tenant = User(full_name="Tom Tenant", role=UserRole.tenant.value, tg_id=1002)
    admin = User(full_name="Ada Admin", role=UserRole.admin.value, tg_id=1003)
    outsider = User(full_name="Otto Outsider", role=UserRole.tenant.value)
    async_session.add_all([landlord, tenant, admin, outsider])
    await async_session.commit()
    # Plain ids: ORM instances are expired by the rollback of a failed operation
    return {"landlord": landlord.id, "tenant": tenant.id, "admin": admin.id, "outsider": outsider.id}


@pytest.fixture
def make_active_agreement(async_session, people):
    """
    Build an active lease directly in the store.

    ``obligations`` is a list of (due_date, due_amount, amount_paid) tuples;
    status is derived from the amounts unless given as a 4th item.
    Returns the agreement id.
    """
    async def _make(
        monthly_rent=500,
        security_deposit=0,
        deposit_status=DepositStatus.held.value,
        obligations=(),
        has_units=False,
        start_date=date(2025, 1, 1)
    ):
        prop = Property(
            owner_id=people["landlord"],
            property_name="Garden Flats",
            address="12 Acacia Ave",
            has_units=has_units,
            status=PropertyStatus.available.value if has_units else PropertyStatus.occupied.value
        )
        async_session.add(prop)
        await async_session.flush()

        unit = None
        if has_units:
            unit = PropertyUnit(property_id=prop.id, unit_number="A1", status=PropertyStatus.occupied.value)
            async_session.add(unit)
            await async_session.flush()

        agreement = RentalAgreement(
            property_id=prop.id,
            unit_id=unit.id if unit else None,
            owner_id=people["landlord"],
            tenant_id=people["tenant"],
            status=AgreementStatus.active.value,
            monthly_rent=Decimal(monthly_rent),
            security_deposit=Decimal(security_deposit),
            start_date=start_date,
            tenant_accepted_agreement=True,
            landlord_accepted_termination=False,
            tenant_accepted_termination=False,
            did_admin_approve_breach=False,
            is_deleted=False
        )
        async_session.add(agreement)
        await async_session.flush()

        async_session.add(SecurityDeposit(
            rental_agreement_id=agreement.id,
            amount=Decimal(security_deposit),
            currency="UGX",
            status=deposit_status,
            refunded_amount=Decimal("0")
        ))

        for item in obligations:
            due_date, due_amount, amount_paid = item[:3]
            if len(item) > 3:
                status = item[3]
            elif Decimal(amount_paid) >= Decimal(due_amount):
                status = RentPaymentStatus.completed.value
            elif Decimal(amount_paid) > 0:
                status = RentPaymentStatus.partial.value
            else:
                status = RentPaymentStatus.pending.value
            async_session.add(RentPayment(
                rental_agreement_id=agreement.id,
                tenant_id=people["tenant"],
                property_id=prop.id,
                unit_id=agreement.unit_id,
                due_date=due_date,
                due_amount=Decimal(due_amount),
                amount_paid=Decimal(amount_paid),
                status=status,
                period_covered=format_period(due_date),
                is_deleted=False
            ))

        await async_session.commit()
        return agreement.id

    return _make


@pytest.fixture
def reload(async_session):
    """Fresh copy of a row, bypassing the identity map."""
    async def _reload(model, pk):
        return await async_session.get(model, pk, populate_existing=True)

    return _reload
