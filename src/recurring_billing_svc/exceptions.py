from typing import Optional


class BillingError(Exception):
    """Base error for the billing engine. ``code`` is a stable machine-readable key."""

    code = 'billing-error'

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidTransition(BillingError):
    code = 'unable-to-update-subscription-status'

    def __init__(self, message: str, subscription_id=None, old_status: str = '', new_status: str = '') -> None:
        super().__init__(message)
        self.subscription_id = subscription_id
        self.old_status = old_status
        self.new_status = new_status


class OrderCreationError(BillingError):
    code = 'new-subscription-order-error'


class RenewalOrderCreationError(OrderCreationError):
    code = 'renewal-order-error'


class InvalidArgument(BillingError, ValueError):
    code = 'invalid-argument'


class PersistenceError(BillingError):
    code = 'persistence-error'
