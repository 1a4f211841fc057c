"""Error types raised by the core and converted to responses at the HTTP boundary."""


class HabitlogError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(HabitlogError):
    status_code = 400
    default_message = "Invalid payload"


class AuthError(HabitlogError):
    status_code = 401
    default_message = "Unauthorized"


class StorageError(HabitlogError):
    status_code = 500
    default_message = "Storage failure"


class UpstreamError(HabitlogError):
    status_code = 502
    default_message = "Upstream request failed"
