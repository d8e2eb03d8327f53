from .pricing_service import PricingService, price_sale
from .inventory_service import InventoryService, apply_movements
from .credit_service import CreditService, classify_aging, derive_settlement
from .customer_service import CustomerService
from .sales_service import SalesService
from .import_service import ImportService

__all__ = [
    "PricingService",
    "price_sale",
    "InventoryService",
    "apply_movements",
    "CreditService",
    "classify_aging",
    "derive_settlement",
    "CustomerService",
    "SalesService",
    "ImportService",
]
