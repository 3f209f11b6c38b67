"""
Common exceptions used across the application

Every request-handling stage raises one of these; the handler decorators in
business_logic_utils turn them into the JSON envelope and status code.
"""


class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, message, status_code=400, details=None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ValidationError(BusinessLogicError):
    """Payload failed schema validation; errors maps field path to message"""
    def __init__(self, message="Validation failed", errors=None, field=None):
        self.errors = dict(errors or {})
        if field and field not in self.errors:
            self.errors[field] = message
        self.field = field
        super().__init__(message, 400, self.errors or None)


class UnauthenticatedError(BusinessLogicError):
    """Missing, malformed or rejected bearer credential"""
    def __init__(self, message="Unauthorized"):
        super().__init__(message, 401)


class ForbiddenError(BusinessLogicError):
    """Resolved identity may not act on the referenced resource"""
    def __init__(self, message="Forbidden"):
        super().__init__(message, 403)


class NotFoundError(ForbiddenError):
    """
    Referenced resource does not exist.

    Reported with the same 403 status as ForbiddenError so callers cannot
    tell which resource ids exist.
    """


class PaymentRequiredError(BusinessLogicError):
    """Upstream gateway reports exhausted credit or balance"""
    def __init__(self, message="Payment required"):
        super().__init__(message, 402)


class RateLimitedError(BusinessLogicError):
    """Upstream gateway throttled the request"""
    def __init__(self, message="Too many requests, please try again later"):
        super().__init__(message, 429)


class EffectFailedError(BusinessLogicError):
    """A storage or provider operation failed; the underlying error is reported as details.reason"""
    def __init__(self, message, cause=None):
        self.cause = cause
        details = {"reason": str(cause)[:500]} if cause else None
        super().__init__(message, 500, details)
