"""SQLAlchemy repository for sandbox Pi payments.

This module persists the payments handled by the local Pi Platform stand-in:
app-to-user (A2U) payments created by the marketplace backend to pay sellers,
and user-to-app (U2A) payments registered when a buyer payment is approved.
Each row carries the flags the real platform reports in a payment's
``status`` object, plus the blockchain txid once a transaction exists.

Database connection parameters are read from the ``DATABASE_URL`` environment
variable, defaulting to a SQLite file next to the service for development.
"""

import hashlib
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Numeric, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./pi_sandbox.db")
NETWORK = os.getenv("PI_SANDBOX_NETWORK", "Pi Testnet")
APP_WALLET_ADDRESS = os.getenv(
    "PI_SANDBOX_WALLET_ADDRESS", "GSANDBOXAPPWALLET000000000000000000000000000000000000000"
)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)


class Base(DeclarativeBase):
    pass


class PiError(Exception):
    """Platform-style rejection rendered as ``{"error", "error_message"}``."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class Payment(Base):
    """SQLAlchemy model representing a sandbox payment.

    Attributes:
        identifier: Public payment id.
        direction: ``app_to_user`` or ``user_to_app``.
        user_uid: Pi uid of the paying or paid user.
        amount: Amount in Pi.
        txid: Blockchain transaction id once submitted.
    """

    __tablename__ = "payments"

    identifier = mapped_column(String(64), primary_key=True)
    direction = mapped_column(String(16), nullable=False)
    user_uid = mapped_column(String(128), nullable=False, index=True)
    amount = mapped_column(Numeric(20, 7), nullable=False)
    memo = mapped_column(String(1000), nullable=False, default="")
    payment_metadata = mapped_column("metadata", JSON, nullable=False, default=dict)
    from_address = mapped_column(String(64), nullable=False)
    to_address = mapped_column(String(64), nullable=False)
    network = mapped_column(String(32), nullable=False, default=NETWORK)

    developer_approved = mapped_column(Boolean, default=False, nullable=False)
    transaction_verified = mapped_column(Boolean, default=False, nullable=False)
    developer_completed = mapped_column(Boolean, default=False, nullable=False)
    cancelled = mapped_column(Boolean, default=False, nullable=False)

    txid = mapped_column(String(128), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict:
        """Return the payment in the Pi Platform API v2 shape."""
        transaction = None
        if self.txid:
            transaction = {
                "txid": self.txid,
                "verified": self.transaction_verified,
                "_link": f"sandbox://transactions/{self.txid}",
            }
        return {
            "identifier": self.identifier,
            "user_uid": self.user_uid,
            "amount": float(self.amount),
            "memo": self.memo,
            "metadata": self.payment_metadata or {},
            "from_address": self.from_address,
            "to_address": self.to_address,
            "direction": self.direction,
            "network": self.network,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "status": {
                "developer_approved": self.developer_approved,
                "transaction_verified": self.transaction_verified,
                "developer_completed": self.developer_completed,
                "cancelled": self.cancelled,
                "user_cancelled": False,
            },
            "transaction": transaction,
        }


def wallet_address_for(uid: str) -> str:
    # deterministic fake public key per user
    return "G" + hashlib.sha256(uid.encode("utf-8")).hexdigest().upper()[:55]


@contextmanager
def get_session():
    """Yield a SQLAlchemy session bound to the configured engine.

    The session is automatically closed on context exit.
    """
    with Session(engine) as s:
        yield s


class PaymentsRepo:
    """Repository implementing the sandbox payment lifecycle."""

    def create_a2u(self, uid: str, amount: Decimal, memo: str, metadata: dict) -> dict:
        """Create an A2U payment from the app wallet to ``uid``.

        Raises:
            PiError: ``ongoing_payment_found`` when the user still has an
                A2U payment that was never completed.
        """
        with get_session() as s:
            ongoing = s.execute(
                select(Payment).where(
                    Payment.user_uid == uid,
                    Payment.direction == "app_to_user",
                    Payment.developer_completed.is_(False),
                    Payment.cancelled.is_(False),
                )
            ).scalars().first()
            if ongoing is not None:
                raise PiError(
                    "ongoing_payment_found",
                    f"User has an ongoing payment {ongoing.identifier}",
                )
            p = Payment(
                identifier=uuid.uuid4().hex[:28],
                direction="app_to_user",
                user_uid=uid,
                amount=amount,
                memo=memo,
                payment_metadata=metadata,
                from_address=APP_WALLET_ADDRESS,
                to_address=wallet_address_for(uid),
                developer_approved=True,
            )
            s.add(p)
            s.commit()
            return p.as_dict()

    def get(self, identifier: str) -> dict:
        with get_session() as s:
            return self._load(s, identifier).as_dict()

    def approve(self, identifier: str, uid: str, amount: Decimal, memo: str) -> dict:
        """Approve a U2A payment, registering it on first sight."""
        with get_session() as s:
            p = s.get(Payment, identifier)
            if p is None:
                p = Payment(
                    identifier=identifier,
                    direction="user_to_app",
                    user_uid=uid,
                    amount=amount,
                    memo=memo,
                    payment_metadata={},
                    from_address=wallet_address_for(uid),
                    to_address=APP_WALLET_ADDRESS,
                )
                s.add(p)
            elif p.direction != "user_to_app":
                raise PiError("invalid_direction", "Only user-to-app payments are approved by the developer")
            p.developer_approved = True
            s.commit()
            return p.as_dict()

    def submit(self, identifier: str) -> str:
        """Fake a blockchain broadcast for an A2U payment and return its txid.

        Submitting twice returns the transaction created the first time.
        """
        with get_session() as s:
            p = self._load(s, identifier, for_update=True)
            if p.direction != "app_to_user":
                raise PiError("invalid_direction", "Only app-to-user payments are submitted by the developer")
            if p.txid is None:
                p.txid = hashlib.sha256(f"{p.identifier}:{uuid.uuid4()}".encode("utf-8")).hexdigest()
                p.transaction_verified = True
                s.commit()
            return p.txid

    def complete(self, identifier: str, txid: str) -> dict:
        """Mark a payment completed by the developer.

        Raises:
            PiError: ``already_completed`` on repeat, ``txid_mismatch`` when
                an A2U payment is completed with a txid other than its own.
        """
        with get_session() as s:
            p = self._load(s, identifier, for_update=True)
            if p.developer_completed:
                raise PiError("already_completed", f"Payment {identifier} is already completed")
            if p.direction == "app_to_user":
                if p.txid is None:
                    raise PiError("payment_not_submitted", "Submit the payment before completing it")
                if p.txid != txid:
                    raise PiError("txid_mismatch", "txid does not match the payment transaction")
            else:
                p.txid = p.txid or txid
                p.transaction_verified = True
            p.developer_completed = True
            s.commit()
            return p.as_dict()

    @staticmethod
    def _load(s: Session, identifier: str, for_update: bool = False) -> Payment:
        stmt = select(Payment).where(Payment.identifier == identifier)
        if for_update:
            stmt = stmt.with_for_update()
        p: Optional[Payment] = s.execute(stmt).scalars().first()
        if p is None:
            raise PiError("payment_not_found", f"Payment {identifier} not found", 404)
        return p


Base.metadata.create_all(engine)
