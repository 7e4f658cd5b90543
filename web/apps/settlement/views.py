"""HTTP views for the settlement app.

Views are kept intentionally small: they validate requests (via Pydantic),
map to domain settlement types, delegate to the domain service and return
an HTTP response.

The payment-completion view obtains a ``SettlementService`` from
``providers.get_settlement_service()``, which wires either the Pi Platform
HTTP gateway or the in-process gateway stub depending on runtime settings.

Response contract of payment completion: once the buyer payment is
finalized and the order (or donation) is stored the endpoint answers 200
with ``success: true``, even when the seller payout failed and the order
was left in ``a2u_failed``. Repeating a call with the same ``paymentId``
and payload replays the stored outcome; reusing a ``paymentId`` with a
different payload answers 409.
"""

import logging

import httpx
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import GatewayError, OrderStatus
from .http_adapters import CircuitOpenError
from .models import OrderModel
from .repository import OrderRepository, order_from_row
from .schemas import CompletePaymentDTO, DonationReadDTO, OrderReadDTO

logger = logging.getLogger(__name__)


def _failure(detail: str, status_code: int, message: str | None = None) -> Response:
    body = {"success": False, "detail": detail}
    if message:
        body["message"] = message
    return Response(body, status=status_code)


class OrdersPingView(APIView):
    """Liveness endpoint for the settlement module."""

    def get(self, request):
        return Response({"ok": True})


class CompletePaymentView(APIView):
    """Complete a buyer payment and settle the purchase or donation."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_complete"

    def post(self, request):
        """Finalize a cleared buyer payment.

        Args:
            request (Request): DRF request with JSON body
                ``{paymentId, txid, purchaseData?, donationData?}``.

        Returns:
            Response: One of the following responses.
            - 200 with {success, message, replayed, order | donation} when the
              payment is finalized and recorded.
            - 400 for payload validation errors.
            - 402 with {detail: "PAYMENT_NOT_COMPLETED"} when the payment
              network rejects the buyer payment.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the payment id
              was settled with a different payload.
            - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when the payment
              network is unreachable.
            - 500 with {detail: "SETTLEMENT_FAILED"} when the settlement
              could not be stored.
        """
        # 1) Pydantic validation
        try:
            dto = CompletePaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return _failure("VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST, str(e))

        # 2) Domain
        try:
            service = providers.get_settlement_service()
            result = service.complete_settlement(dto.payment_id, dto.txid, dto.to_settlement())
        except ValueError as e:
            code = str(e)
            status_code = status.HTTP_409_CONFLICT if code == "IDEMPOTENCY_CONFLICT" else status.HTTP_400_BAD_REQUEST
            return _failure(code, status_code)
        except GatewayError as e:
            logger.warning("buyer payment rejected", extra={"payment_id": dto.payment_id, "code": e.code})
            return _failure("PAYMENT_NOT_COMPLETED", status.HTTP_402_PAYMENT_REQUIRED, str(e))
        except (httpx.HTTPError, CircuitOpenError) as e:
            logger.warning("payment network unavailable", extra={"payment_id": dto.payment_id, "error": str(e)})
            return _failure("UPSTREAM_UNAVAILABLE", status.HTTP_503_SERVICE_UNAVAILABLE)
        except Exception as e:
            logger.exception("settlement failed", extra={"payment_id": dto.payment_id})
            return _failure("SETTLEMENT_FAILED", status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

        # 3) Response
        body = {
            "success": True,
            "message": "Payment completed successfully",
            "payment_id": result.payment_id,
            "replayed": result.replayed,
        }
        if result.order is not None:
            body["order"] = OrderReadDTO.from_domain(result.order).model_dump(mode="json")
        if result.donation is not None:
            d = result.donation
            body["donation"] = DonationReadDTO(
                id=d.id, user_id=d.donor.uid, amount=d.amount, pi_payment_id=d.pi_payment_id,
                txid=d.txid, status=d.status, memo=d.memo,
            ).model_dump(mode="json")
        return Response(body, status=status.HTTP_200_OK)


class OrdersCollectionView(APIView):
    """Paginated order listing, filterable by status.

    Operators poll ``?status=a2u_failed`` to find orders whose seller payout
    needs manual attention.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        qs = OrderModel.objects.select_related("buyer", "seller").order_by("-created_at")
        wanted = request.GET.get("status")
        if wanted:
            try:
                qs = qs.filter(status=OrderStatus(wanted).value)
            except ValueError:
                return _failure("INVALID_STATUS", status.HTTP_400_BAD_REQUEST)
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return _failure("INVALID_PAGINATION", status.HTTP_400_BAD_REQUEST)
        p = Paginator(qs, max(page_size, 1))
        page_obj = p.get_page(page)

        results = [
            OrderReadDTO.from_domain(order_from_row(o)).model_dump(mode="json", exclude_none=True)
            for o in page_obj.object_list
        ]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = OrderRepository().get(oid)
        except OrderModel.DoesNotExist:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"), status=200)
