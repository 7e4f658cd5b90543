"""Request-scoped middleware for the settlement web service.

``RequestIdMiddleware`` gives every incoming HTTP request an identifier: the
client's ``X-Request-ID`` header when present, otherwise a new UUIDv4. The
id is stored on the request, in the ``REQUEST_ID_CTX`` context variable (read
by the logging filter and by the outgoing Pi Platform client) and echoed in
the ``X-Request-ID`` response header. Each handled request is logged with
its path, method, status and duration.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies with 413
before they reach the views.
"""

import contextvars
import logging
import os
import time
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger("gateway.access")

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(256 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    """Sets, propagates and logs a per-request identifier.

    Attributes:
        HEADER (str): Incoming header, in Django's ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to every response.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._started_at = time.monotonic()
        request._rid_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        started = getattr(request, "_started_at", None)
        logger.info(
            "request handled",
            extra={
                "path": request.path,
                "method": request.method,
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 1) if started else None,
            },
        )
        token = getattr(request, "_rid_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"success": False, "detail": "PAYLOAD_TOO_LARGE"}, status=413)
