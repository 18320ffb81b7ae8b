"""Error types shared by the store, session and API layers."""


class TicketDeskError(Exception):
    """Base class; `message` is safe to show to the user as-is."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TicketDeskError):
    """Bad or missing input. Raised before any store call is made."""


class StoreError(TicketDeskError):
    """A read or write against the data store failed."""


class DuplicateTicketNumber(StoreError):
    """The store rejected an insert because the ticket number is taken."""


class AuthError(TicketDeskError):
    """Bad credentials, or an admin operation without a signed-in user."""


class NotFoundError(TicketDeskError):
    pass


class AllocationError(TicketDeskError):
    """No ticket number could be allocated for the requested day."""
