class MoneyOSError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MoneyOSError):
    status_code = 400


class ConflictError(MoneyOSError):
    # Duplicate usernames keep the 400 that existing clients expect.
    status_code = 400


class AuthError(MoneyOSError):
    status_code = 401


class MissingTokenError(AuthError):
    status_code = 403


class NotFoundError(MoneyOSError):
    status_code = 404


class StorageError(MoneyOSError):
    status_code = 500


class InvalidCredentialsError(AuthError):
    status_code = 400
