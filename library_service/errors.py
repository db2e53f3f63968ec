class LibraryError(Exception):
    """Base for failures that are reported to the API caller as-is."""

    status_code = 500
    kind = "error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


class NotFound(LibraryError):
    status_code = 404
    kind = "not_found"


class Unavailable(LibraryError):
    # Borrow contract reports an exhausted title as a bad request
    status_code = 400
    kind = "unavailable"


class Conflict(LibraryError):
    status_code = 409
    kind = "conflict"


class Unauthorized(LibraryError):
    status_code = 401
    kind = "unauthorized"


class Forbidden(LibraryError):
    status_code = 403
    kind = "forbidden"


class ValidationFailed(LibraryError):
    status_code = 400
    kind = "validation"
