class RequisitionError(Exception):
    """Raised when a requisition or inventory operation fails."""

    status_code = 400
    default_code = "requisition_error"

    def __init__(self, message: str, code: str | None = None, field: str | None = None):
        self.message = message
        self.code = code or self.default_code
        self.field = field or self.code
        super().__init__(message)


class ValidationError(RequisitionError):
    default_code = "validation_error"


class NotFound(RequisitionError):
    status_code = 404
    default_code = "not_found"


class PermissionDenied(RequisitionError):
    status_code = 403
    default_code = "forbidden"


class InvalidTransition(RequisitionError):
    status_code = 409
    default_code = "invalid_transition"


class AlreadyProcessed(RequisitionError):
    """The request already moved past the state this operation expects."""

    status_code = 409
    default_code = "already_processed"


class AlreadyReleased(RequisitionError):
    """Recoverable: the reservation was released by an earlier call."""

    status_code = 409
    default_code = "already_released"


class InsufficientStock(RequisitionError):
    status_code = 409
    default_code = "insufficient_stock"

    def __init__(self, message: str, available: int | None = None, requested: int | None = None):
        self.available = available
        self.requested = requested
        super().__init__(message, field="quantity")


class InvalidAmount(RequisitionError):
    default_code = "invalid_amount"

    def __init__(self, message: str):
        super().__init__(message, field="amount")
