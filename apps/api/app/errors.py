"""
Error taxonomy shared by the HTTP routes, the OAuth flow and the jobs.

Every failure that reaches a caller is one of these kinds. External call
failures are converted at the client wrapper, so routes never see raw
transport exceptions.
"""
from typing import Any, Dict, Optional


class ReviewDeskError(Exception):
    kind = "unexpected_error"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class AuthenticationRequired(ReviewDeskError):
    kind = "authentication_required"
    status_code = 401
    default_message = "Authentication required"


class AccessDenied(ReviewDeskError):
    kind = "access_denied"
    status_code = 403
    default_message = "You do not have access to this resource"


class NotFound(ReviewDeskError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class InvalidInput(ReviewDeskError):
    kind = "invalid_input"
    status_code = 422
    default_message = "Invalid input"


class InvalidOrExpiredState(ReviewDeskError):
    kind = "invalid_or_expired_state"
    status_code = 400
    default_message = "Invalid or expired authorization request. Please connect again."


class InvalidState(InvalidOrExpiredState):
    default_message = "Invalid authorization request. Please connect again."


class ExpiredState(InvalidOrExpiredState):
    default_message = "Authorization request expired. Please connect again."


class MissingAuthCode(ReviewDeskError):
    kind = "missing_auth_code"
    status_code = 400
    default_message = "Missing authorization code"


class NotConnected(ReviewDeskError):
    kind = "not_connected"
    status_code = 409
    default_message = "This source is not connected"


class LocationNotConfigured(ReviewDeskError):
    kind = "location_not_configured"
    status_code = 409
    default_message = "Business location not configured for this source"


class NotSupported(ReviewDeskError):
    kind = "not_supported"
    status_code = 400
    default_message = "This operation is not available for this source"


class NotExternallySourced(ReviewDeskError):
    kind = "not_externally_sourced"
    status_code = 409
    default_message = "This review was not imported from a source and cannot be replied to there"


class ResponseConflict(ReviewDeskError):
    kind = "response_conflict"
    status_code = 409
    default_message = "The response is not in a state that allows this action"


class TokenExpired(ReviewDeskError):
    kind = "token_expired"
    status_code = 409
    default_message = "The source authorization has expired. Please reconnect."


class TokenRefreshFailed(ReviewDeskError):
    kind = "token_refresh_failed"
    status_code = 409
    default_message = "Could not refresh the source authorization. Please reconnect."


class RateLimited(ReviewDeskError):
    kind = "rate_limited"
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if retry_after is not None:
            details["retry_after"] = int(retry_after)
        self.retry_after = retry_after
        super().__init__(message, details)


class QuotaExhausted(ReviewDeskError):
    kind = "quota_exhausted"
    status_code = 402
    default_message = "AI credits exhausted. Please add funds to continue."


class ProviderError(ReviewDeskError):
    kind = "provider_error"
    status_code = 502
    default_message = "The source provider returned an error"


class ConfigurationError(ReviewDeskError):
    kind = "configuration_error"
    status_code = 500
    default_message = "Server configuration error"


class UnexpectedError(ReviewDeskError):
    pass
