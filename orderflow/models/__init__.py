from orderflow.models.order import (
    INSTANT_PAYMENT_METHODS,
    Order,
    OrderItem,
    OrderSource,
    OrderStatusHistory,
    PaymentDecision,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    PaymentVerification,
    ShippingMethod,
    SubOrder,
)
from orderflow.models.payout import Payout, PayoutMethod, SellerPayoutAccount
from orderflow.models.event import OrderEvent

__all__ = [
    "INSTANT_PAYMENT_METHODS",
    "Order",
    "OrderItem",
    "OrderSource",
    "OrderStatusHistory",
    "PaymentDecision",
    "PaymentMethod",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentVerification",
    "ShippingMethod",
    "SubOrder",
    "Payout",
    "PayoutMethod",
    "SellerPayoutAccount",
    "OrderEvent",
]
