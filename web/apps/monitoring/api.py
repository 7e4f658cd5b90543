from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.settlement.idempotency import IntentLog
from apps.settlement.models import OrderModel


def health_view(_request):
    """Report DB reachability plus settlement backlog for operators.

    ``unsettled_intents`` counts buyer payments that were opened or
    finalized but never recorded; ``a2u_failed_orders`` counts orders whose
    seller payout needs manual attention. Neither affects the status code.
    """
    db_ok = False
    settlement = None
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
        settlement = {
            "unsettled_intents": IntentLog().unsettled_count(),
            "a2u_failed_orders": OrderModel.objects.filter(status=OrderModel.Status.A2U_FAILED).count(),
        }
    except DatabaseError:
        db_ok = False

    code = 200 if db_ok else 503
    return JsonResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}, "settlement": settlement}},
        status=code,
    )
