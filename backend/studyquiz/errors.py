"""Domain errors raised by services and mapped to HTTP responses.

Services raise these instead of `HTTPException` so they stay usable from
scripts and tests; `main.py` registers a single handler that turns an
`AppError` into `{"detail": message}` with the matching status code.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class InternalError(AppError):
    status_code = 500


class InvalidResult(AppError):
    """A generator returned no usable questions."""
    status_code = 500


class GenerationError(RuntimeError):
    """The external question generator failed (after any retries)."""
