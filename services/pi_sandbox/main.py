"""Pi Platform sandbox API built with FastAPI.

This service stands in for the Pi Platform API v2 in local and docker
setups so the marketplace backend can run the whole settlement flow without
network access: approving and completing buyer payments, and creating,
submitting and completing the A2U payouts to sellers. Validation is
performed with Pydantic models, while persistence is delegated to the
SQLAlchemy-backed repository in ``repo.PaymentsRepo``.

Errors use the platform's body shape ``{"error", "error_message"}``.
"""

import logging
import os
import time
import uuid
from decimal import Decimal
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import PaymentsRepo, PiError, engine

API_KEY = os.getenv("PI_SANDBOX_API_KEY", "")

app = FastAPI(title="Pi Platform Sandbox")


@app.on_event("startup")
def _startup_db():
    # wait briefly until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


logger = logging.getLogger("pi_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.exception_handler(PiError)
async def _pi_error(request: Request, exc: PiError):
    logger.info(
        "payment rejected",
        extra={"request_id": getattr(request.state, "request_id", None), "error": exc.code},
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "error_message": exc.message})


def require_api_key(authorization: Annotated[Optional[str], Header()] = None):
    """Check ``Authorization: Key <key>`` when ``PI_SANDBOX_API_KEY`` is set."""
    if API_KEY and authorization != f"Key {API_KEY}":
        raise PiError("unauthorized", "Invalid or missing API key", 401)


class A2UPaymentIn(BaseModel):
    """A2U payment request.

    Attributes:
        amount: Positive amount in Pi.
        memo: Free-text memo shown to the user.
        metadata: Arbitrary developer metadata.
        uid: Pi uid of the receiving user.
    """

    amount: Decimal = Field(gt=0)
    memo: str = Field(max_length=1000)
    metadata: dict = Field(default_factory=dict)
    uid: str = Field(min_length=1)


class CreatePaymentRequest(BaseModel):
    payment: A2UPaymentIn


class ApproveRequest(BaseModel):
    """Buyer payment details the wallet would have reported."""

    uid: str = "sandbox-user"
    amount: Decimal = Field(default=Decimal("1"), gt=0)
    memo: str = ""


class CompleteRequest(BaseModel):
    txid: str = Field(min_length=1)


class SubmitResponse(BaseModel):
    txid: str


@app.get("/health")
def health():
    """Liveness/health check endpoint."""
    return {"ok": True}


@app.post("/v2/payments", dependencies=[Depends(require_api_key)])
def create_payment(req: CreatePaymentRequest):
    """Create an app-to-user payment."""
    p = req.payment
    return PaymentsRepo().create_a2u(uid=p.uid, amount=p.amount, memo=p.memo, metadata=p.metadata)


@app.get("/v2/payments/{identifier}", dependencies=[Depends(require_api_key)])
def get_payment(identifier: str):
    return PaymentsRepo().get(identifier)


@app.post("/v2/payments/{identifier}/approve", dependencies=[Depends(require_api_key)])
def approve_payment(identifier: str, req: Optional[ApproveRequest] = None):
    """Approve a user-to-app payment, registering it when unknown."""
    req = req or ApproveRequest()
    return PaymentsRepo().approve(identifier, uid=req.uid, amount=req.amount, memo=req.memo)


@app.post("/v2/payments/{identifier}/submit", response_model=SubmitResponse, dependencies=[Depends(require_api_key)])
def submit_payment(identifier: str):
    """Broadcast an A2U payment to the (fake) blockchain.

    Stands in for the developer wallet signing and submitting the
    transaction to Horizon. Repeated calls return the same txid.
    """
    return SubmitResponse(txid=PaymentsRepo().submit(identifier))


@app.post("/v2/payments/{identifier}/complete", dependencies=[Depends(require_api_key)])
def complete_payment(identifier: str, req: CompleteRequest):
    """Mark a payment completed.

    Raises:
        PiError: 400 ``already_completed`` when called twice, 404
            ``payment_not_found`` for unknown payments.
    """
    return PaymentsRepo().complete(identifier, req.txid)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
