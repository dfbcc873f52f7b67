"""
Simulated payment gateway.

Stands in for the card/mobile-money processor: every charge succeeds and is
recorded as a GatewayPayment row inside the caller's transaction, so a failed
orchestrator call leaves no charge behind.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lease.config import config
from lease.database.models import GatewayPayment, GatewayPaymentType

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    transaction_id: str
    status: str
    method: str
    currency: str


class PaymentGatewaySimulator:
    METHOD = "Flutterwave"
    STATUS_SUCCESSFUL = "successful"

    def __init__(self, currency: Optional[str] = None):
        self.currency = currency or config.DEFAULT_CURRENCY

    @staticmethod
    def generate_transaction_id() -> str:
        return f"FW_RENT_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

    async def charge(
        self,
        session: AsyncSession,
        amount: Decimal,
        payment_type: GatewayPaymentType,
        metadata: Optional[dict] = None
    ) -> ChargeResult:
        transaction_id = self.generate_transaction_id()
        record = GatewayPayment(
            method=self.METHOD,
            status=self.STATUS_SUCCESSFUL,
            amount=Decimal(amount),
            currency=self.currency,
            payment_type=getattr(payment_type, "value", payment_type),
            transaction_id=transaction_id,
            meta_json=metadata or {}
        )
        session.add(record)
        await session.flush()

        logger.info(f"Gateway charge {transaction_id}: {amount} {self.currency} ({record.payment_type})")

        return ChargeResult(
            transaction_id=transaction_id,
            status=self.STATUS_SUCCESSFUL,
            method=self.METHOD,
            currency=self.currency
        )


payment_gateway = PaymentGatewaySimulator()
