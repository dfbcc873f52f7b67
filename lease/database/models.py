import enum
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List
from sqlalchemy import BigInteger, String, Boolean, ForeignKey, Integer, Numeric, DATE, JSON, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from lease.database.core import Base, UTCDateTime

# Enums
class UserRole(str, enum.Enum):
    landlord = "landlord"
    tenant = "tenant"
    admin = "admin"

class PropertyStatus(str, enum.Enum):
    available = "available"
    occupied = "occupied"
    unavailable = "unavailable"

class AgreementStatus(str, enum.Enum):
    draft = "draft"
    ready = "ready"
    pending_payment = "pending_payment"
    active = "active"
    terminated = "terminated"
    cancelled = "cancelled"
    completed = "completed"

TERMINAL_AGREEMENT_STATUSES = (
    AgreementStatus.terminated.value,
    AgreementStatus.cancelled.value,
    AgreementStatus.completed.value,
)

class RentPaymentStatus(str, enum.Enum):
    pending = "pending"
    partial = "partial"
    completed = "completed"
    overdued = "overdued"
    cancelled = "cancelled"
    refunded = "refunded"

# Obligations that still expect money
OUTSTANDING_STATUSES = (
    RentPaymentStatus.pending.value,
    RentPaymentStatus.overdued.value,
    RentPaymentStatus.partial.value,
)

class DepositStatus(str, enum.Enum):
    held = "held"
    refunded = "refunded"
    partially_refunded = "partially_refunded"
    forfeited = "forfeited"

class TerminationReason(str, enum.Enum):
    NON_PAYMENT = "NON_PAYMENT"
    BREACH_OF_AGREEMENT = "BREACH_OF_AGREEMENT"
    ILLEGAL_ACTIVITY = "ILLEGAL_ACTIVITY"
    OWNER_REQUIREMENT = "OWNER_REQUIREMENT"
    MUTUAL_AGREEMENT = "MUTUAL_AGREEMENT"

class EvictionStatus(str, enum.Enum):
    warning = "warning"
    cancelled = "cancelled"
    evicted = "evicted"
    resolved = "resolved"

class BreachStatus(str, enum.Enum):
    warning = "warning"
    pending_remedy = "pending_remedy"
    eviction_recommended = "eviction_recommended"
    resolved = "resolved"
    cancelled = "cancelled"
    evicted = "evicted"

OPEN_BREACH_STATUSES = (
    BreachStatus.warning.value,
    BreachStatus.pending_remedy.value,
    BreachStatus.eviction_recommended.value,
)

class GatewayPaymentType(str, enum.Enum):
    RENT_PAYMENT = "RENT_PAYMENT"
    INITIAL_RENT_PAYMENT = "INITIAL_RENT_PAYMENT"


# Users (landlords, tenants, admins)
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String)
    role: Mapped[UserRole] = mapped_column(String, default=UserRole.tenant.value)
    email: Mapped[Optional[str]] = mapped_column(String)
    phone: Mapped[Optional[str]] = mapped_column(String)
    # Notification address
    tg_id: Mapped[Optional[int]] = mapped_column(BigInteger, unique=True, index=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    property_name: Mapped[str] = mapped_column(String)
    address: Mapped[Optional[str]] = mapped_column(String)
    has_units: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[PropertyStatus] = mapped_column(String, default=PropertyStatus.available.value)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    units: Mapped[List["PropertyUnit"]] = relationship(back_populates="property")


class PropertyUnit(Base):
    __tablename__ = "property_units"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id", ondelete="CASCADE"))
    unit_number: Mapped[str] = mapped_column(String)
    status: Mapped[PropertyStatus] = mapped_column(String, default=PropertyStatus.available.value)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    property: Mapped["Property"] = relationship(back_populates="units")


# Rental agreement (aggregate root)
class RentalAgreement(Base):
    __tablename__ = "rental_agreements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"))
    unit_id: Mapped[Optional[int]] = mapped_column(ForeignKey("property_units.id"), nullable=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    tenant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    status: Mapped[AgreementStatus] = mapped_column(String, default=AgreementStatus.draft.value)
    monthly_rent: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    security_deposit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    start_date: Mapped[Optional[date]] = mapped_column(DATE, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(DATE, nullable=True)
    tenant_accepted_agreement: Mapped[bool] = mapped_column(Boolean, default=False)

    # Termination metadata
    termination_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    termination_requested_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    termination_role: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    termination_requested_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    termination_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    termination_effective_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    termination_confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    landlord_accepted_termination: Mapped[bool] = mapped_column(Boolean, default=False)
    tenant_accepted_termination: Mapped[bool] = mapped_column(Boolean, default=False)
    did_admin_approve_breach: Mapped[bool] = mapped_column(Boolean, default=False)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    # Optimistic concurrency guard, bumped on every ORM update
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("ix_rental_agreements_property_unit", "property_id", "unit_id"),
    )

    property: Mapped["Property"] = relationship()
    unit: Mapped[Optional["PropertyUnit"]] = relationship()
    owner: Mapped["User"] = relationship(foreign_keys=[owner_id])
    tenant: Mapped[Optional["User"]] = relationship(foreign_keys=[tenant_id])

    rent_payments: Mapped[List["RentPayment"]] = relationship(back_populates="agreement")
    deposit: Mapped[Optional["SecurityDeposit"]] = relationship(back_populates="agreement", uselist=False)
    eviction_logs: Mapped[List["EvictionLog"]] = relationship(back_populates="agreement")
    breach_logs: Mapped[List["BreachLog"]] = relationship(back_populates="agreement")


# Rent payment (one billing-period obligation)
class RentPayment(Base):
    __tablename__ = "rent_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rental_agreement_id: Mapped[int] = mapped_column(ForeignKey("rental_agreements.id"), index=True)
    tenant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"))
    unit_id: Mapped[Optional[int]] = mapped_column(ForeignKey("property_units.id"), nullable=True)

    due_date: Mapped[date] = mapped_column(DATE)
    due_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    status: Mapped[RentPaymentStatus] = mapped_column(String, default=RentPaymentStatus.pending.value)

    method: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    period_covered: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # "MM/DD/YYYY - MM/DD/YYYY"
    payment_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    __table_args__ = (
        Index("ix_rent_payments_agreement_due", "rental_agreement_id", "due_date"),
    )

    agreement: Mapped["RentalAgreement"] = relationship(back_populates="rent_payments")

    @property
    def balance(self) -> Decimal:
        return Decimal(self.due_amount) - Decimal(self.amount_paid or 0)


class SecurityDeposit(Base):
    __tablename__ = "security_deposits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rental_agreement_id: Mapped[int] = mapped_column(ForeignKey("rental_agreements.id"), unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String, default="UGX")
    method: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[DepositStatus] = mapped_column(String, default=DepositStatus.held.value)
    transaction_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    agreement: Mapped["RentalAgreement"] = relationship(back_populates="deposit")


class EvictionLog(Base):
    """Grace-period termination case (non-payment, owner requirement, mutual agreement)"""
    __tablename__ = "eviction_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    agreement_id: Mapped[int] = mapped_column(ForeignKey("rental_agreements.id"), index=True)
    reason: Mapped[TerminationReason] = mapped_column(String)
    status: Mapped[EvictionStatus] = mapped_column(String, default=EvictionStatus.warning.value)
    initiated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    warning_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)
    # NON_PAYMENT: due date of the unpaid obligation that made the case eligible
    arrears_due_date: Mapped[Optional[date]] = mapped_column(DATE, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    agreement: Mapped["RentalAgreement"] = relationship(back_populates="eviction_logs")


class BreachLog(Base):
    """Breach / illegal-activity case awaiting admin review"""
    __tablename__ = "agreement_breach_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    agreement_id: Mapped[int] = mapped_column(ForeignKey("rental_agreements.id"), index=True)
    reason: Mapped[TerminationReason] = mapped_column(String)
    status: Mapped[BreachStatus] = mapped_column(String, default=BreachStatus.warning.value)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_path: Mapped[str] = mapped_column(String)
    warning_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    remedy_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, onupdate=func.now())

    agreement: Mapped["RentalAgreement"] = relationship(back_populates="breach_logs")


class GatewayPayment(Base):
    """Record of a (simulated) gateway charge"""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    method: Mapped[str] = mapped_column(String, default="Flutterwave")
    status: Mapped[str] = mapped_column(String, default="successful")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String, default="UGX")
    payment_type: Mapped[GatewayPaymentType] = mapped_column(String)
    transaction_id: Mapped[str] = mapped_column(String, unique=True)
    meta_json: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
