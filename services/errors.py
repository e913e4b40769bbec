class BookingError(Exception):
    """Base for every error the booking core raises to its caller."""

    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class SlotUnavailable(BookingError):
    # Capacity invariant would be violated; the caller may pick another slot
    status_code = 409


class InvalidTransition(BookingError):
    status_code = 409


class InvalidToken(BookingError):
    status_code = 403


class ValidationError(BookingError):
    status_code = 400


class NotFound(ValidationError):
    status_code = 404
