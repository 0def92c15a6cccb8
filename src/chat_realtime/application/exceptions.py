from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class ValidationError(AppError):
    pass


class TransportError(AppError):
    """The duplex session could not be opened or was lost."""


class NotConnectedError(TransportError):
    pass


class AuthenticationError(TransportError):
    """The server rejected the identity; never retried."""


class MediaError(AppError):
    pass


class MediaPermissionError(MediaError):
    pass


class MediaUnavailableError(MediaError):
    pass


class SignalingError(AppError):
    pass


class CallBusyError(AppError):
    pass


class ApiError(AppError):
    def __init__(self, detail: str = "", status: int | None = None) -> None:
        self.status = status
        super().__init__(detail)
