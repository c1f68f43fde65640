"""
Order engine error taxonomy.

Recoverable errors (stock locked, points race) are converted into typed
results at the service boundary; AmountMismatchError and SignatureInvalidError
stop processing without any state change.
"""


class OrderEngineError(Exception):
    """Base class. `code` is the error key returned to callers."""

    code = "common.error"


class StockLockedError(OrderEngineError):
    """No card could be claimed after the configured attempts."""

    code = "buy.stockLocked"


class InsufficientPointsError(OrderEngineError):
    """Conditional points decrement affected no row (balance changed meanwhile)."""

    code = "buy.pointsMismatch"


class AmountMismatchError(OrderEngineError):
    """Confirmed amount differs from the stored order amount."""

    code = "payment.amountMismatch"

    def __init__(self, order_id: str, expected, paid) -> None:
        super().__init__(f"Amount mismatch! Order {order_id}: {expected}, Paid: {paid}")
        self.order_id = order_id
        self.expected = expected
        self.paid = paid


class SignatureInvalidError(OrderEngineError):
    code = "payment.signatureInvalid"


class AlreadyProcessedError(OrderEngineError):
    """Order already left the fulfillable states; callers treat it as a no-op."""

    code = "order.alreadyProcessed"


class OrderNotFoundError(OrderEngineError):
    code = "order.notFound"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class GatewayError(OrderEngineError):
    """Payment gateway unreachable, breaker open or unparsable reply."""

    code = "payment.gatewayError"
