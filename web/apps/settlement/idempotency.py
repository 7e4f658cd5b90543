"""Settlement intent log keyed by the buyer payment id.

An intent is written before the buyer payment is finalized with the
gateway and advanced as settlement progresses. The log doubles as the
idempotency layer of the settlement endpoint: a retried call with the same
payment id and payload finds the earlier intent, while reusing a payment id
with a different payload after the gateway accepted it is rejected as a
conflict.
"""

from django.db import transaction, IntegrityError

from .domain import LOCKED_INTENT_STATES, IntentState, SettlementIntent, payload_hash
from .models import SettlementIntentModel


def _intent(rec: SettlementIntentModel) -> SettlementIntent:
    return SettlementIntent(
        payment_id=rec.payment_id,
        txid=rec.txid,
        state=IntentState(rec.state),
        order_id=rec.order_id,
        donation_id=rec.donation_id,
    )


class IntentLog:
    """Django ORM implementation of ``IntentLogPort``."""

    @transaction.atomic
    def open(self, payment_id: str, txid: str, payload: dict) -> tuple[bool, SettlementIntent]:
        """Get-or-create the intent record for a buyer payment.

        Behavior:
            - First call for a payment id: create an OPENED record and return
              (False, intent).
            - Later call with the same payload: lock the record and return
              (True, intent) so the caller can replay or resume.
            - Later call with a different payload while the intent is OPENED
              or REJECTED: re-key the intent to the new txid and payload,
              since the gateway never accepted the earlier attempt.
            - Later call with a different payload once FINALIZED or SETTLED:
              raise ValueError("IDEMPOTENCY_CONFLICT").

        The create path runs in a nested savepoint so an IntegrityError only
        rolls back that block; the existing-record path takes a row lock
        (SELECT ... FOR UPDATE) to avoid races under concurrency.

        Args:
            payment_id: Gateway id of the buyer payment.
            txid: Blockchain transaction id of the buyer payment.
            payload: JSON-serializable settlement fingerprint.

        Returns:
            tuple[bool, SettlementIntent]: (existing, intent).

        Raises:
            ValueError: If the payment id was finalized with a different
                payload.
        """
        h = payload_hash(payload)
        try:
            with transaction.atomic():
                rec = SettlementIntentModel.objects.create(
                    payment_id=payment_id, txid=txid, request_hash=h,
                )
                return False, _intent(rec)
        except IntegrityError:
            rec = SettlementIntentModel.objects.select_for_update().get(payment_id=payment_id)
            if rec.request_hash != h:
                if IntentState(rec.state) in LOCKED_INTENT_STATES:
                    raise ValueError("IDEMPOTENCY_CONFLICT")
                # gateway never accepted the earlier attempt: re-key it
                rec.txid = txid
                rec.request_hash = h
                rec.state = IntentState.OPENED.value
                rec.save(update_fields=["txid", "request_hash", "state", "updated_at"])
            return True, _intent(rec)

    def mark(self, payment_id: str, state: IntentState, order_id=None, donation_id=None) -> SettlementIntent:
        """Advance an intent to ``state``, attaching the stored record ids."""
        rec = SettlementIntentModel.objects.get(payment_id=payment_id)
        rec.state = IntentState(state).value
        fields = ["state", "updated_at"]
        if order_id is not None:
            rec.order_id = order_id
            fields.append("order_id")
        if donation_id is not None:
            rec.donation_id = donation_id
            fields.append("donation_id")
        rec.save(update_fields=fields)
        return _intent(rec)

    def unsettled_count(self) -> int:
        """Number of intents that may hold buyer funds with no stored record.

        Rejected and settled intents are excluded.
        """
        return SettlementIntentModel.objects.exclude(
            state__in=[IntentState.SETTLED.value, IntentState.REJECTED.value]
        ).count()
