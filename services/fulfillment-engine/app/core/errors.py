"""
Fulfillment Engine — Engine error kinds

Every error here is recoverable by the caller. The HTTP layer maps
``status_code`` onto the response; the bulk executor reports ``str(exc)``
per item instead of raising.
"""


class EngineError(Exception):
    status_code: int = 400
    code: str = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Malformed input, detected before any mutation."""
    status_code = 422
    code = "validation_error"


class InsufficientStock(EngineError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: str, shortfall: int):
        super().__init__(f"Insufficient stock for product '{product_id}': short by {shortfall}")
        self.product_id = product_id
        self.shortfall = shortfall


class InvalidTransition(EngineError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot move order from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class NotFound(EngineError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} '{entity_id}' not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class DuplicateConstraint(EngineError):
    """SKU, order number or billing-date uniqueness violated."""
    status_code = 409
    code = "duplicate"


class ConcurrencyConflict(EngineError):
    """Raised when an optimistic lock conflict is detected:
    the version_id in the DB changed between our read and update,
    meaning another concurrent transaction won the race.
    Callers retry the whole operation, never resume it.
    """
    status_code = 503
    code = "concurrency_conflict"
