"""Service provider helpers for wiring SettlementService with ports.

``get_settlement_service`` returns a ``SettlementService`` wired with the
Django ORM repositories and, depending on ``settings.USE_HTTP_ADAPTERS``,
either the Pi Platform HTTP gateway or the in-process gateway stub used by
tests and local development. A new service is built per request so the
gateway is always an explicit dependency of the service.
"""

from django.conf import settings

from .adapters import PiGatewayStub
from .domain import PaymentGatewayPort, SettlementService
from .http_adapters import HttpPiGatewayClient
from .idempotency import IntentLog
from .repository import ChatMessenger, DonationRepository, OrderRepository, PartyDirectory


def get_gateway() -> PaymentGatewayPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpPiGatewayClient()
    return PiGatewayStub()


def get_settlement_service() -> SettlementService:
    """Return a SettlementService with the configured gateway and ORM stores."""
    return SettlementService(
        gateway=get_gateway(),
        orders=OrderRepository(),
        parties=PartyDirectory(),
        intents=IntentLog(),
        messenger=ChatMessenger(),
        donations=DonationRepository(),
    )
