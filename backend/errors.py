"""Error taxonomy shared by the service modules and the Flask layer.

Every error carries the HTTP status it maps to; ``app.py`` registers a single
handler that renders them as ``{"error": ...}`` JSON.
"""


class ApiError(Exception):
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message: str, status_code: int = None, details: dict = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {'error': self.message}
        body.update(self.details)
        return body


class ValidationError(ApiError):
    status_code = 400
    code = 'INVALID_REQUEST'


class AuthError(ApiError):
    status_code = 401
    code = 'UNAUTHORIZED'


class NotFoundError(ApiError):
    status_code = 404
    code = 'NOT_FOUND'


class ConflictError(ApiError):
    status_code = 409
    code = 'CONFLICT'


class VerificationError(ApiError):
    """On-chain data does not match the claimed payment."""
    status_code = 400
    code = 'VERIFICATION_FAILED'


class ReplayError(ApiError):
    """A transaction signature was submitted for a second time."""
    status_code = 400
    code = 'REPLAY_DETECTED'


class RateLimitError(ApiError):
    status_code = 429
    code = 'RATE_LIMITED'


class RpcUnavailableError(ApiError):
    status_code = 503
    code = 'RPC_UNAVAILABLE'


class DuplicateRowError(Exception):
    """Raised by repositories when a unique constraint rejects an insert."""
