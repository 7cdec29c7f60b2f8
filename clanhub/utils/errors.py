"""Error taxonomy for ClanHub, mapped onto HTTP status codes"""

from typing import Any, Dict, Optional

class ClanHubError(Exception):
    """Base error carrying the HTTP status and machine-readable code"""

    status = 500

    def __init__(self, message: str, code: Optional[str] = None,
                 status: Optional[int] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.code = code
        if status is not None:
            self.status = status
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'error': self.message}
        if self.code:
            body['code'] = self.code
        body.update(self.extra)
        return body

class BadRequest(ClanHubError):
    status = 400

class Unauthorized(ClanHubError):
    status = 401

    def __init__(self, message: str = "Unauthorized", **kwargs: Any):
        super().__init__(message, **kwargs)

class Forbidden(ClanHubError):
    status = 403

    def __init__(self, message: str = "Forbidden", **kwargs: Any):
        super().__init__(message, **kwargs)

class NotFound(ClanHubError):
    status = 404

class Conflict(ClanHubError):
    """Ambiguous resolution or idempotency violation"""
    status = 409

class RateLimited(ClanHubError):
    status = 429

class ServiceUnavailable(ClanHubError):
    status = 503
