from .models import (
    CartLine,
    Customer,
    DiscountConfig,
    FixedDiscount,
    MovementLogEntry,
    NO_DISCOUNT,
    PaymentRecord,
    PercentDiscount,
    PricedSale,
    Product,
    Sale,
    Settlement,
    VatConfig,
)
from .errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    InvalidDiscountError,
    NotFoundError,
    OverpaymentError,
    ValidationError,
)

__all__ = [
    "CartLine",
    "Customer",
    "DiscountConfig",
    "FixedDiscount",
    "MovementLogEntry",
    "NO_DISCOUNT",
    "PaymentRecord",
    "PercentDiscount",
    "PricedSale",
    "Product",
    "Sale",
    "Settlement",
    "VatConfig",
    "ConcurrentModificationError",
    "InsufficientStockError",
    "InvalidDiscountError",
    "NotFoundError",
    "OverpaymentError",
    "ValidationError",
]
