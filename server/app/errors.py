# server/app/errors.py


class CourierError(Exception):
    status_code = 400
    message = "Courier error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class CourierNotFound(CourierError):
    status_code = 404
    message = "Courier not found"


class CustomCourierError(CourierError):
    """Custom couriers take operator-supplied tracking IDs, never allocated ones."""
    status_code = 400
    message = "Custom courier does not use tracking number allocation"


class ExpressRangeNotConfigured(CourierError):
    status_code = 422
    message = "Express range not configured for courier"


class RangeExhausted(CourierError):
    status_code = 409
    message = "Tracking number range exhausted"
