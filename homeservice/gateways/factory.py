from typing import Optional

from ..config import Settings, get_settings
from .base import PaymentGateway
from .mock_gateway import MockGateway
from .stripe_gateway import StripeGateway


def build_gateway(settings: Settings) -> PaymentGateway:
    """Elige la pasarela según BILLING_PROVIDER (mock | stripe)."""
    if settings.billing_provider == "stripe":
        return StripeGateway(settings.stripe_secret_key, settings.webhook_secret)
    return MockGateway(settings.webhook_secret)


_gateway: Optional[PaymentGateway] = None

def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(get_settings())
    return _gateway
