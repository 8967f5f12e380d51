class RelayError(Exception):
    """Base class for errors the signal relay reports to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(RelayError):
    status_code = 401


class AuthorizationError(RelayError):
    status_code = 403


class InvalidSignalError(RelayError):
    status_code = 422
