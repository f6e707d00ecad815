import random
import time
from decimal import Decimal
from typing import Dict, Optional
from uuid import uuid4

from orderflow.config import settings

# gateway error types the mock can produce
ERROR_TYPES = (
    "INSUFFICIENT_FUNDS",
    "CARD_DECLINED",
    "CARD_EXPIRED",
    "FRAUD_SUSPECTED",
    "GATEWAY_TIMEOUT",
    "NETWORK_ERROR",
    "THREE_DS_TIMEOUT",
    "TECHNICAL_ERROR",
)


class PaymentGatewayError(Exception):
    """Raised when the gateway cannot be reached at all (no classified answer)."""
    pass


class MockPaymentGateway:
    """
    Simulated card processor.

    charge() returns {success: True, transaction_id} or
    {success: False, error_code, error_type}. Tests steer it through the
    payment details: ``force_error`` picks an error type, ``force_exception``
    makes the call raise.
    """

    def __init__(
        self,
        delay_ms: Optional[int] = None,
        failure_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        delay_ms = settings.PAYMENT_MOCK_DELAY_MS if delay_ms is None else delay_ms
        self.delay_seconds = delay_ms / 1000.0
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()
        self.calls = 0

    def charge(self, order_id: int, amount: Decimal, details: Optional[Dict] = None) -> Dict:
        details = details or {}
        self.calls += 1

        # simulate network latency / gateway processing
        time.sleep(self.delay_seconds)

        if details.get("force_exception"):
            raise PaymentGatewayError("Simulated gateway outage")

        error_type = details.get("force_error")
        if not error_type and self.rng.random() < self.failure_rate:
            error_type = self.rng.choice(ERROR_TYPES)

        if error_type:
            return {
                "success": False,
                "error_code": f"ERR_{error_type}",
                "error_type": error_type,
            }

        return {
            "success": True,
            "transaction_id": f"txn_{uuid4().hex[:16]}",
            "amount": str(amount),
        }
