"""Application errors and their HTTP mapping."""

from typing import Any, Dict, Optional


class FlintError(Exception):
    """Base error. Routes let these bubble up to the registered handler."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, **self.context}


class ValidationFailed(FlintError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class Unauthorized(FlintError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class Forbidden(FlintError):
    status_code = 403
    default_code = "FORBIDDEN"


class MFARequired(FlintError):
    status_code = 403
    default_code = "MFA_REQUIRED"

    def __init__(self, message: str = "Additional authentication required", **kwargs):
        super().__init__(message, **kwargs)
        self.context.setdefault("requiresMFA", True)


class NotFound(FlintError):
    status_code = 404
    default_code = "NOT_FOUND"


class NotConnected(FlintError):
    status_code = 409
    default_code = "NOT_CONNECTED"


class Conflict(FlintError):
    status_code = 409
    default_code = "CONFLICT"


class ProviderError(FlintError):
    """An upstream provider call failed."""

    status_code = 502
    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        upstream_status: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.provider = provider
        self.upstream_status = upstream_status
        self.context.setdefault("provider", provider)
        if upstream_status is not None:
            self.context.setdefault("upstreamStatus", upstream_status)


class ServiceNotConfigured(FlintError):
    status_code = 503
    default_code = "NOT_CONFIGURED"
