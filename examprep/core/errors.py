"""
Domain error kinds raised by the engine and rendered by the API layer.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for every error the engine reports to its callers."""

    kind = "engine_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "type": self.kind, "details": self.details}


class Unauthorized(EngineError):
    kind = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(EngineError):
    kind = "forbidden"
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFound(EngineError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource.capitalize()} not found",
            {"resource": resource, "id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class TestNotFound(NotFound):
    __test__ = False

    def __init__(self, test_id: str):
        super().__init__("test", test_id)


class QuotaExceeded(EngineError):
    """Free-tier limit hit. Carries usage so a client can render an upgrade prompt."""

    kind = "quota_exceeded"
    status_code = 403

    def __init__(self, resource: str, used: int, limit: int, reason: str):
        super().__init__(
            reason,
            {"resource": resource, "used": used, "limit": limit, "is_subscribed": False},
        )
        self.resource = resource
        self.used = used
        self.limit = limit


class AlreadyCompleted(EngineError):
    kind = "already_completed"
    status_code = 409

    def __init__(self, test_id: str, score: Optional[int]):
        super().__init__(
            "Test already completed",
            {"test_id": test_id, "score": score},
        )
        self.test_id = test_id
        self.score = score


# Answer submission against a finished test.
TestAlreadyCompleted = AlreadyCompleted


class GenerationFailed(EngineError):
    kind = "generation_failed"
    status_code = 502

    def __init__(self, reason: str):
        super().__init__("Content generation failed", {"reason": reason})
        self.reason = reason


class StoreUnavailable(EngineError):
    kind = "store_unavailable"
    status_code = 503

    def __init__(self, message: str = "Data store unavailable"):
        super().__init__(message)


class ValidationFailed(EngineError):
    kind = "validation_failed"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else {})
        self.field = field


class RateLimited(EngineError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, remaining: int, reset_in: int):
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            {"remaining": remaining, "reset_in": reset_in},
        )
        self.remaining = remaining
        self.reset_in = reset_in


class BillingFailed(EngineError):
    """The billing provider rejected or failed a checkout/portal request."""

    kind = "billing_failed"
    status_code = 502

    def __init__(self, reason: str):
        super().__init__("Billing provider request failed", {"reason": reason})
        self.reason = reason


class InvalidWebhook(EngineError):
    kind = "invalid_webhook"
    status_code = 400

    def __init__(self, reason: str):
        super().__init__("Invalid webhook", {"reason": reason})
        self.reason = reason
