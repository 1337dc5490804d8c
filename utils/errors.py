from __future__ import annotations


class PortalError(Exception):
    """Base for errors the portal surfaces to callers."""

    status_code = 500

    def __init__(self, message: str, user_friendly: bool = True):
        self.message = message
        self.user_friendly = user_friendly
        super().__init__(message)


class ValidationError(PortalError):
    """User-correctable input problem. Nothing was written."""

    status_code = 400


class AuthorizationError(PortalError):
    status_code = 403


class NotFoundError(PortalError):
    status_code = 404


class IntegrityViolation(PortalError):
    """Fetched data is missing an expected relation, or a cross-table invariant drifted."""

    status_code = 409


class ProviderError(PortalError):
    """External payment provider failed, timed out or rejected the request."""

    status_code = 502


class ProviderTimeout(ProviderError):
    pass


class ReconciliationError(PortalError):
    """A payment could not be applied to its invoice."""

    status_code = 409


class StaleInvoiceError(ReconciliationError):
    """The invoice changed between read and write; the caller retries."""
