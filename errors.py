from typing import Optional


class BookingError(Exception):
    """Base class for every refusal raised by the booking engine."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """Malformed input: inverted window, missing field, outside business hours."""


class ItemUnavailableError(ValidationError):
    """A borrowed item code is not in the catalog or has no stock at all."""

    def __init__(self, code: str):
        super().__init__(f'Item "{code}" is unavailable.')
        self.code = code


class ConflictError(BookingError):
    """A room, vehicle or driver is already held in the requested window."""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class CapacityError(BookingError):
    """Borrowed quantity would push an item past its stock."""

    def __init__(self, code: str, name: str, remaining: int):
        super().__init__(
            f'Request exceeds stock; "{name}" has {remaining} units remaining in that window.'
        )
        self.code = code
        self.remaining = remaining


class StateError(BookingError):
    """Lifecycle transition attempted on a request that is no longer pending."""


class NotFoundError(BookingError):
    pass


class RetryableCreationError(BookingError):
    """Lost a race on an identifier or lock row; the caller may simply retry."""
