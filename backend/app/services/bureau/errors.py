"""
Bureau Monitor - Pull Pipeline Errors

AuthenticationError  credential/token failure; retryable after re-authentication
UpstreamError        network, timeout or non-success response; caller may re-invoke
NormalizationError   structurally malformed provider payload; not retryable
NotFoundError        unknown subject (or snapshot/change)
"""
from typing import Optional


class BureauError(Exception):
    """Base class for every failure raised by the pull pipeline."""

    def __init__(self, message: str, bureau: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.bureau = bureau


class AuthenticationError(BureauError):
    """Provider credentials missing, expired or rejected."""


class UpstreamError(BureauError):
    """Provider unreachable, timed out, or returned a non-2xx / non-JSON response."""

    def __init__(self, message: str, bureau: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, bureau)
        self.status_code = status_code


class NormalizationError(BureauError):
    """Provider payload is missing a structurally required node."""


class NotFoundError(BureauError):
    """Requested subject or record does not exist."""
