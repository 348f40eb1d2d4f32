from __future__ import annotations


class KiteAuthError(RuntimeError):
    pass


class StorageError(KiteAuthError):
    pass


class TokenValidationError(KiteAuthError):
    pass


class CallbackError(KiteAuthError):
    pass


class ExchangeError(KiteAuthError):
    pass


class AuthTimeoutError(KiteAuthError, TimeoutError):
    def __init__(
        self,
        message: str = "Authentication timeout - no callback received within 5 minutes",
    ) -> None:
        super().__init__(message)


class FlowInProgressError(KiteAuthError):
    def __init__(self, message: str = "An authentication flow is already in progress.") -> None:
        super().__init__(message)


class ListenerError(KiteAuthError):
    pass
