"""Payment gateway clients used to charge pledges.

Only a mock gateway ships with the service; production deployments plug a
real provider in behind :class:`PaymentGateway`.
"""

import os
import random
import time
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "mock").lower()

NO_PAYMENT_METHOD_REASON = "No payment method configured"

MOCK_DECLINE_REASONS = [
    "Card declined",
    "Insufficient funds",
    "Card expired",
    "Payment processing error",
]


@dataclass
class GatewayResult:
    """Outcome of a single charge attempt."""

    success: bool
    transaction_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def approved(cls, transaction_id: str) -> "GatewayResult":
        return cls(success=True, transaction_id=transaction_id)

    @classmethod
    def declined(cls, reason: str) -> "GatewayResult":
        return cls(success=False, reason=reason)


class PaymentGateway:
    """Interface for charging a stored payment method.

    Implementations must be safe to call at most once per charge record;
    the scheduler never retries inside a single attempt.
    """

    async def attempt(
        self, token: Optional[str], amount_cents: int, currency: str
    ) -> GatewayResult:
        raise NotImplementedError


class MockPaymentGateway(PaymentGateway):
    """Gateway that approves most charges at random."""

    def __init__(self, success_rate: float = 0.95, rng: random.Random | None = None):
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    async def attempt(
        self, token: Optional[str], amount_cents: int, currency: str
    ) -> GatewayResult:
        if not token:
            return GatewayResult.declined(NO_PAYMENT_METHOD_REASON)
        if self.rng.random() < self.success_rate:
            suffix = "".join(
                self.rng.choice("abcdefghijklmnopqrstuvwxyz0123456789")
                for _ in range(6)
            )
            transaction_id = f"txn_{int(time.time() * 1000)}_{suffix}"
            logger.debug(
                "Mock gateway approved %s %s as %s",
                amount_cents,
                currency,
                transaction_id,
            )
            return GatewayResult.approved(transaction_id)
        reason = self.rng.choice(MOCK_DECLINE_REASONS)
        logger.debug("Mock gateway declined %s %s: %s", amount_cents, currency, reason)
        return GatewayResult.declined(reason)


def get_payment_gateway() -> PaymentGateway:
    """Build the configured gateway; also used as a FastAPI dependency."""
    if PAYMENT_GATEWAY == "mock":
        return MockPaymentGateway()
    raise ValueError(f"Unsupported payment gateway: {PAYMENT_GATEWAY}")
