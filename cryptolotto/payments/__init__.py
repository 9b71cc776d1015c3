from .adapter import PaymentAdapter
from .rails import (
    CardCheckoutRail,
    CheckoutHandle,
    Confirmation,
    OnChainRail,
    OrderCaptureRail,
    ProviderStatus,
)

__all__ = [
    "PaymentAdapter",
    "CardCheckoutRail",
    "CheckoutHandle",
    "Confirmation",
    "OnChainRail",
    "OrderCaptureRail",
    "ProviderStatus",
]
