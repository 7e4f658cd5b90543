"""HTTP adapter for the Pi Platform API with retries, circuit breaker and context headers.

This module implements the concrete payment gateway used by settlement on
top of ``httpx`` and ``stellar_sdk``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set by
    the gateway middleware.
- A circuit breaker shared by every call to the Pi Platform API, with
    HALF_OPEN probing after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx,
    applied only to calls that are safe to repeat (reading and completing a
    payment). Creating and broadcasting an A2U payment are never retried.
- Error mapping: 4xx bodies are turned into ``GatewayError``, and the
    network's ``already_completed`` answer into ``PaymentAlreadyCompleted``.
"""

import logging
import threading
import time
from decimal import Decimal
from typing import Optional

import httpx
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string
from stellar_sdk import Asset, Keypair, Server, TransactionBuilder

from .domain import A2UPaymentSpec, GatewayError, PaymentAlreadyCompleted, PaymentGatewayPort

logger = logging.getLogger(__name__)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

HORIZON_URLS = {
    "Pi Network": "https://api.mainnet.minepi.com",
    "Pi Testnet": "https://api.testnet.minepi.com",
}


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """Raised when the circuit refuses a call to the Pi Platform API."""


class CircuitBreaker:
    """Circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED -> OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN -> HALF_OPEN once ``reset_timeout`` seconds have elapsed.
    - HALF_OPEN -> CLOSED on a successful trial call, back to OPEN on failure.
      Only one trial call may be in flight while HALF_OPEN.

    Thread-safe via an internal lock; gthread workers share one instance.
    """

    CLOSED, OPEN, HALF_OPEN = "CLOSED", "OPEN", "HALF_OPEN"

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self.reset()

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = self.CLOSED
            self._opened_at = 0.0
            self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN and time.monotonic() - self._opened_at >= self.reset_timeout:
                self._state = self.HALF_OPEN
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Admit a call, returning the state it was admitted in.

        Raises:
            CircuitOpenError: 'CIRCUIT_OPEN' while open,
                'CIRCUIT_HALF_OPEN_BUSY' when a half-open trial call is already
                running.
        """
        with self._lock:
            st = self.state
            if st == self.OPEN:
                raise CircuitOpenError("CIRCUIT_OPEN")
            if st == self.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError("CIRCUIT_HALF_OPEN_BUSY")
                self._trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = self.CLOSED
            self._trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == self.HALF_OPEN or (
                self._failures >= self.fail_threshold and self._state != self.OPEN
            ):
                self._state = self.OPEN
                self._opened_at = time.monotonic()
                self._trial_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._trial_in_flight = False


_pi_cb = CircuitBreaker(
    "pi-platform",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build outgoing headers: ``X-Request-ID`` from the context plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy() -> tuple[int, float]:
    """Return (max_retries, backoff_base_seconds) from settings."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 2),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _gateway_error(resp: httpx.Response) -> GatewayError:
    """Map a 4xx response from the Pi Platform API to a GatewayError."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}
    code = str(body.get("error") or f"http_{resp.status_code}")
    message = str(body.get("error_message") or body.get("message") or resp.text or code)
    if code == "already_completed" or "already_completed" in message:
        return PaymentAlreadyCompleted(message, resp.status_code)
    return GatewayError(code, message, resp.status_code)


# ---------------- Blockchain submitters ---------------- #

class HorizonSubmitter:
    """Signs and broadcasts A2U payments to the Pi blockchain via Horizon.

    The transaction pays ``amount`` of the native asset from the platform
    wallet to the payment's ``to_address`` with the payment identifier as
    text memo, which is how the Pi Platform links the transaction back to
    the payment.
    """

    def __init__(self, wallet_seed: str, horizon_url: str | None = None, timeout_secs: int = 180):
        if not wallet_seed:
            raise ImproperlyConfigured("PI_WALLET_PRIVATE_SEED is required to submit A2U payments")
        self.keypair = Keypair.from_secret(wallet_seed)
        self.horizon_url = horizon_url
        self.timeout_secs = timeout_secs

    def submit(self, payment: dict) -> str:
        if payment.get("from_address") != self.keypair.public_key:
            raise GatewayError("wallet_mismatch", "Payment was not issued from the platform wallet")
        network = payment.get("network") or "Pi Testnet"
        server = Server(horizon_url=self.horizon_url or HORIZON_URLS.get(network, HORIZON_URLS["Pi Testnet"]))
        account = server.load_account(self.keypair.public_key)
        tx = (
            TransactionBuilder(
                source_account=account,
                network_passphrase=network,
                base_fee=server.fetch_base_fee(),
            )
            .append_payment_op(
                destination=payment["to_address"],
                asset=Asset.native(),
                amount=str(payment["amount"]),
            )
            .add_text_memo(payment["identifier"])
            .set_timeout(self.timeout_secs)
            .build()
        )
        tx.sign(self.keypair)
        response = server.submit_transaction(tx)
        return response["id"]


class SandboxSubmitter:
    """Asks the local Pi sandbox service to broadcast a payment."""

    def __init__(self, base_url: str, api_key: str, timeout: float,
                 transport: httpx.BaseTransport | None = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def submit(self, payment: dict) -> str:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(
                f"{self.base_url}/payments/{payment['identifier']}/submit",
                headers=_request_headers({"Authorization": f"Key {self.api_key}"}),
            )
        if resp.status_code >= 400:
            raise _gateway_error(resp)
        return resp.json()["txid"]


def build_submitter():
    """Return the blockchain submitter selected by ``settings.PI_SUBMITTER``."""
    kind = getattr(settings, "PI_SUBMITTER", "horizon")
    if kind == "sandbox":
        return SandboxSubmitter(settings.PI_API_BASE_URL, settings.PI_API_KEY, settings.HTTP_TIMEOUT_SECS)
    if kind == "horizon":
        return HorizonSubmitter(settings.PI_WALLET_PRIVATE_SEED, getattr(settings, "PI_HORIZON_URL", None))
    raise ImproperlyConfigured(f"Unknown PI_SUBMITTER {kind!r}")


# ---------------- Pi Platform gateway ---------------- #

class HttpPiGatewayClient(PaymentGatewayPort):
    """Payment gateway backed by the Pi Platform API v2.

    Args:
        api_key: Platform API key; defaults to ``settings.PI_API_KEY``.
        base_url: API root; defaults to ``settings.PI_API_BASE_URL``.
        timeout: Per-request timeout in seconds.
        submitter: Object with ``submit(payment) -> txid`` used to
            broadcast A2U payments; built from settings when omitted.
        transport: Optional httpx transport (tests use ``MockTransport``).

    Raises:
        ImproperlyConfigured: If no API key is configured.
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None,
                 timeout: float | None = None, submitter=None,
                 transport: httpx.BaseTransport | None = None):
        self.api_key = api_key or getattr(settings, "PI_API_KEY", "")
        if not self.api_key:
            raise ImproperlyConfigured("PI_API_KEY is required")
        self.base_url = (base_url or settings.PI_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.transport = transport
        self.submitter = submitter if submitter is not None else build_submitter()

    def create_payment(self, spec: A2UPaymentSpec) -> str:
        """Create an A2U payment and return its identifier. Not retried."""
        body = {
            "payment": {
                "amount": float(Decimal(spec.amount)),
                "memo": spec.memo,
                "metadata": spec.metadata,
                "uid": spec.uid,
            }
        }
        payment = self._call("POST", "/payments", body, retry=False)
        logger.info("a2u payment created", extra={"payment_id": payment.get("identifier"), "uid": spec.uid})
        return payment["identifier"]

    def get_payment(self, payment_id: str) -> dict:
        return self._call("GET", f"/payments/{payment_id}")

    def submit_payment(self, payment_id: str) -> str:
        """Broadcast an A2U payment and return the blockchain txid.

        A payment that already carries a transaction is not broadcast again.
        """
        payment = self.get_payment(payment_id)
        existing = (payment.get("transaction") or {}).get("txid")
        if existing:
            return existing
        txid = self.submitter.submit(payment)
        logger.info("a2u payment submitted", extra={"payment_id": payment_id, "txid": txid})
        return txid

    def complete_payment(self, payment_id: str, txid: str) -> dict:
        """Tell the Pi Platform the payment's transaction is final.

        Raises:
            PaymentAlreadyCompleted: If the payment was completed before.
            GatewayError: For any other rejection.
        """
        return self._call("POST", f"/payments/{payment_id}/complete", {"txid": txid})

    def _call(self, method: str, path: str, payload: dict | None = None, retry: bool = True) -> dict:
        """Issue one API call under the circuit breaker and retry policy.

        4xx answers are business outcomes: they raise ``GatewayError`` and
        do not count as circuit failures. Transport errors and 5xx are
        retried when ``retry`` is set and count as failures once retries are
        exhausted.

        Raises:
            GatewayError: For 4xx responses.
            httpx.RequestError: For transport errors after retries.
            httpx.HTTPStatusError: For 5xx responses after retries.
            CircuitOpenError: When the circuit is open.
        """
        max_retries, backoff = _retry_policy()
        if not retry:
            max_retries = 0
        tries = 0

        state = _pi_cb.before_call()
        headers = _request_headers({
            "Authorization": f"Key {self.api_key}",
            "X-Circuit-State": state,
            "X-Retry-Count": "0",
        })

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.request(method, f"{self.base_url}{path}", json=payload, headers=headers)
                        if resp.status_code < 400:
                            _pi_cb.on_success()
                            return resp.json()
                        if resp.status_code < 500:
                            _pi_cb.on_success()  # business outcome, not a circuit failure
                            raise _gateway_error(resp)
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries > max_retries or not _should_retry(resp, exc):
                        _pi_cb.on_failure()
                        logger.error(
                            "pi platform call failed",
                            extra={"method": method, "path": path, "tries": tries},
                        )
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                    time.sleep(min(sleep_s, getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)))
        finally:
            _pi_cb.on_finish()
