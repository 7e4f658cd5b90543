"""In-process stub adapter for the payment gateway port.

The stub implements ``PaymentGatewayPort`` without any network calls. It is
intended for unit tests and local development where deterministic behavior
is useful and the Pi Platform API is not reachable.
"""

import uuid
from decimal import Decimal

from .domain import A2UPaymentSpec, GatewayError, PaymentAlreadyCompleted, PaymentGatewayPort


class PiGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Creates A2U payments with a positive amount, submits them with a
    generated txid and completes any payment once; completing the same
    payment again raises ``PaymentAlreadyCompleted`` like the real network.
    Every call is appended to ``calls`` as ``(operation, args)``.
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.payments: dict[str, A2UPaymentSpec] = {}
        self.completed: dict[str, str] = {}

    def create_payment(self, spec: A2UPaymentSpec) -> str:
        self.calls.append(("create", (spec,)))
        if Decimal(spec.amount) <= 0:
            raise GatewayError("invalid_amount", "A2U amount must be positive", 400)
        payment_id = uuid.uuid4().hex[:28]
        self.payments[payment_id] = spec
        return payment_id

    def submit_payment(self, payment_id: str) -> str:
        self.calls.append(("submit", (payment_id,)))
        if payment_id not in self.payments:
            raise GatewayError("payment_not_found", f"Unknown payment {payment_id}", 404)
        return uuid.uuid4().hex

    def complete_payment(self, payment_id: str, txid: str) -> dict:
        self.calls.append(("complete", (payment_id, txid)))
        if payment_id in self.completed:
            raise PaymentAlreadyCompleted()
        self.completed[payment_id] = txid
        return {"identifier": payment_id, "transaction": {"txid": txid}, "status": {"developer_completed": True}}
