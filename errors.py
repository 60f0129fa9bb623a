# errors.py
from fastapi import HTTPException


class ProxyError(HTTPException):
    """A pipeline stage failure with a fixed status and user-visible message."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None) -> None:
        super().__init__(status_code=type(self).status_code, detail=detail or self.message, headers=headers)

    @property
    def kind(self) -> str:
        return type(self).__name__


class TooManyRequests(ProxyError):
    status_code = 429
    message = "Too many requests, please try again later."


class MissingCredential(ProxyError):
    status_code = 401
    message = "Missing or invalid Authorization header"


class InvalidCredential(ProxyError):
    status_code = 403
    message = "Invalid or expired token"


class MissingTarget(ProxyError):
    status_code = 400
    message = "Missing target URL"


class InvalidURL(ProxyError):
    status_code = 400
    message = "Invalid URL format"


class DomainNotAllowed(ProxyError):
    status_code = 403
    message = "Domain not allowed"

    def __init__(self, hostname: str) -> None:
        super().__init__(detail=f"Domain '{hostname}' not allowed")
        self.hostname = hostname


class PayloadTooLarge(ProxyError):
    status_code = 413
    message = "Request body too large"


class UpstreamError(ProxyError):
    status_code = 502
    message = "Upstream request failed"


class InternalError(ProxyError):
    status_code = 500
    message = "Internal server error"


class ClientDisconnected(Exception):
    """The caller went away before the upstream response was ready."""
