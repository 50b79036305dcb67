from __future__ import annotations


class GuessServiceError(Exception):
    """Base class for errors raised by the guess service."""


class InvalidDirectionError(GuessServiceError, ValueError):
    pass


class PredictionAlreadyActiveError(GuessServiceError):
    def __init__(self, identity: str) -> None:
        super().__init__("prediction already active")
        self.identity = identity


class PriceUnavailableError(GuessServiceError):
    pass


class UserNotFoundError(GuessServiceError, LookupError):
    def __init__(self, identity: str) -> None:
        super().__init__(f"user not found: {identity}")
        self.identity = identity


class StoreConflictError(GuessServiceError):
    pass


class AuthError(GuessServiceError):
    pass


class ConnectionClosedError(GuessServiceError):
    pass


class StreamAuthenticationError(AuthError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"stream rejected credentials: HTTP {status_code}")
        self.status_code = status_code
