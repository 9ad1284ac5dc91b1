from typing import Optional, Any

class SMSDeskError(Exception):
    """
    Base exception for the SMSDesk application.
    """
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500, details: Optional[Any] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)

class ResourceNotFoundError(SMSDeskError):
    """
    Raised when a requested resource is not found.
    """
    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(message, code="NOT_FOUND", status_code=404, details=details)

class AuthenticationError(SMSDeskError):
    """
    Raised when authentication fails.
    """
    def __init__(self, message: str = "Authentication failed", details: Optional[Any] = None):
        super().__init__(message, code="AUTHENTICATION_FAILED", status_code=401, details=details)

class BadRequestError(SMSDeskError):
    """
    Raised for malformed identifiers or payloads.
    """
    def __init__(self, message: str = "Bad request", details: Optional[Any] = None):
        super().__init__(message, code="BAD_REQUEST", status_code=400, details=details)

class ValidationError(SMSDeskError):
    """
    Raised when input validation fails.
    """
    def __init__(self, message: str = "Validation error", details: Optional[Any] = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=422, details=details)

class InvalidStateError(SMSDeskError):
    """
    Raised when a campaign or message cannot make the requested transition.
    """
    def __init__(self, message: str = "Invalid state transition", details: Optional[Any] = None):
        super().__init__(message, code="INVALID_STATE", status_code=409, details=details)

class ConflictError(SMSDeskError):
    """
    Raised when a resource already exists.
    """
    def __init__(self, message: str = "Resource already exists", details: Optional[Any] = None):
        super().__init__(message, code="CONFLICT", status_code=409, details=details)

class ExternalServiceError(SMSDeskError):
    """
    Raised when an external service (e.g., an SMS provider) fails.
    """
    def __init__(self, message: str = "External service error", details: Optional[Any] = None):
        super().__init__(message, code="EXTERNAL_SERVICE_ERROR", status_code=502, details=details)
