class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class InsufficientStockError(AppError):
    def __init__(self, product_id: int, available=None, requested=None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        msg = f"Not enough stock for product {product_id}."
        if available is not None:
            msg += f" Available: {available}"
        super().__init__(msg)


class InvalidDiscountError(AppError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class OverpaymentError(AppError):
    """Payment exceeds the invoice's outstanding balance."""


class ConcurrentModificationError(AppError):
    """Lost a write race; retry the whole operation."""
