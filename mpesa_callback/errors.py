class CallbackError(Exception):
    """Base class for callback processing errors."""


class CallbackValidationError(CallbackError):
    """Raised when an inbound callback cannot be normalized."""


class MalformedCallback(CallbackValidationError):
    pass


class MissingField(CallbackValidationError):
    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f'Missing required fields: {field}')


class TypeMismatch(CallbackValidationError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class StoreUnavailable(CallbackError):
    """Raised when the document store cannot complete an operation."""
