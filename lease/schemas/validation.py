from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from lease.database.models import BreachStatus, TerminationReason, UserRole
from lease.errors import ValidationError


class AmountModel(BaseModel):
    amount: Decimal = Field(gt=0, description="Positive amount")

    @field_validator('amount', mode='before')
    def parse_decimal(cls, v):
        if isinstance(v, str):
            # Replace common separators
            v = v.replace(',', '').replace(' ', '')
        if isinstance(v, float):
            v = str(v)
        try:
            return Decimal(v)
        except (InvalidOperation, TypeError):
            raise ValueError("Must be a number")

    @field_validator('amount')
    def two_decimals(cls, v):
        v = v.quantize(Decimal("0.01"))
        if v <= 0:
            raise ValueError("Amount must be at least 0.01")
        return v


class PaymentInput(AmountModel):
    method: str = Field(min_length=1, default="Cash")
    notes: Optional[str] = None


class AgreementDraftInput(BaseModel):
    monthly_rent: Decimal = Field(gt=0)
    security_deposit: Decimal = Field(ge=0, default=Decimal("0"))
    end_date: Optional[date] = None


class TerminationInput(BaseModel):
    initiator_role: UserRole
    reason: TerminationReason
    description: Optional[str] = None
    grace_days: Optional[int] = Field(default=None, ge=0, le=365)

    @model_validator(mode='after')
    def landlord_or_tenant(self):
        if self.initiator_role == UserRole.admin:
            raise ValueError("Termination is initiated by the landlord or the tenant")
        return self


class BreachReviewInput(BaseModel):
    outcome: BreachStatus
    remedy_days: Optional[int] = Field(default=None, ge=1, le=365)

    @field_validator('outcome')
    def reviewable(cls, v):
        if v not in (BreachStatus.pending_remedy, BreachStatus.resolved, BreachStatus.eviction_recommended):
            raise ValueError("Outcome must be pending_remedy, resolved or eviction_recommended")
        return v


def validate(model, **data):
    """Build ``model`` from keyword data, raising lease ValidationError on bad input."""
    try:
        return model(**data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {field or 'input'}: {first.get('msg')}",
            {"field": field, "errors": e.errors(include_url=False, include_context=False)}
        ) from e
