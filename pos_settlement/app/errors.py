from typing import Optional


class SettlementError(Exception):
    """Base class for every failure the settlement engine raises."""


class CartClosedError(SettlementError):
    def __init__(self, cart_id: str, state: str):
        super().__init__(f"cart {cart_id} is {state}; no further changes are allowed")
        self.cart_id = cart_id
        self.state = state


class LineNotFoundError(SettlementError):
    def __init__(self, product_id: str):
        super().__init__(f"no line for product {product_id}")
        self.product_id = product_id


class CartNotFoundError(SettlementError):
    def __init__(self, cart_id: str):
        super().__init__(f"cart {cart_id} not found")
        self.cart_id = cart_id


# Collaborator failures. The operator's remedy differs: a service failure means
# "try again later", a business rejection means "change something first".

class CollaboratorError(SettlementError):
    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.status_code = status_code


class ServiceUnavailableError(CollaboratorError):
    pass


class BusinessRejectionError(CollaboratorError):
    pass


class RateUnavailableError(SettlementError):
    pass


class AccountResolutionError(SettlementError):
    def __init__(self, currency: str):
        super().__init__(f"no cash-on-hand account found for {currency}")
        self.currency = currency


class AmbiguousTenderError(SettlementError):
    """Both currencies were tendered and the customer overpaid; an operator must pick."""


class NoOverpaymentError(SettlementError):
    pass


class ExchangeNotApplicableError(SettlementError):
    pass


class SubmissionBlockedError(SettlementError):
    pass


class ExchangeFailedError(SettlementError):
    def __init__(self, saga_id: str, cause: CollaboratorError):
        super().__init__(f"exchange not posted: {cause.message}")
        self.saga_id = saga_id
        self.cause = cause


class SaleRejectedError(SettlementError):
    def __init__(self, saga_id: str, cause: CollaboratorError):
        super().__init__(f"sale not posted: {cause.message}")
        self.saga_id = saga_id
        self.cause = cause


class OrphanedExchangeError(SettlementError):
    """The exchange committed but the sale did not; the exchange must not be re-posted."""

    def __init__(self, saga_id: str, exchange_id: str, cause: CollaboratorError):
        super().__init__(
            f"exchange {exchange_id} was posted but the sale failed ({cause.message}); "
            "record the sale again with retry, do not repeat the exchange"
        )
        self.saga_id = saga_id
        self.exchange_id = exchange_id
        self.cause = cause


class TransferFailedError(SettlementError):
    def __init__(self, product_id: str, cause: CollaboratorError):
        super().__init__(f"transfer for product {product_id} failed: {cause.message}")
        self.product_id = product_id
        self.cause = cause


class ExchangeOutcomeUnknownError(SettlementError):
    """The exchange call timed out or failed upstream; it may or may not have committed."""

    def __init__(self, saga_id: str, cause: CollaboratorError):
        super().__init__(
            f"exchange outcome unknown ({cause.message}); check the shop backend and record "
            "whether it was posted before submitting again"
        )
        self.saga_id = saga_id
        self.cause = cause


class SagaPendingError(SettlementError):
    """The cart already has an exchange posted (or possibly posted) under an open saga."""

    def __init__(self, cart_id: str, saga_id: str):
        super().__init__(
            f"cart {cart_id} has an open exchange under saga {saga_id}; "
            "resolve or retry that saga instead of posting another exchange"
        )
        self.cart_id = cart_id
        self.saga_id = saga_id
