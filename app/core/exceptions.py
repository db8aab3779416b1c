from typing import Optional, Any

class SubsBotError(Exception):
    """
    Base exception for SubsBot application.
    """
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500, details: Optional[Any] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)

class ResourceNotFoundError(SubsBotError):
    """
    Raised when a requested resource is not found.
    """
    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(message, code="NOT_FOUND", status_code=404, details=details)

class AuthenticationError(SubsBotError):
    """
    Raised when authentication fails (e.g. a bad webhook secret).
    """
    def __init__(self, message: str = "Authentication failed", details: Optional[Any] = None):
        super().__init__(message, code="AUTHENTICATION_FAILED", status_code=401, details=details)

class ValidationError(SubsBotError):
    """
    Raised when a form field fails validation. Handled by re-prompting.
    """
    def __init__(self, message: str = "Validation error", details: Optional[Any] = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=422, details=details)

class ConfigurationError(SubsBotError):
    """
    Raised when the application is misconfigured. Fatal at startup.
    """
    def __init__(self, message: str = "Invalid configuration", details: Optional[Any] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", status_code=500, details=details)


# Session lifecycle

class SessionError(SubsBotError):
    """
    Base class for intake session errors.
    """
    def __init__(self, message: str, code: str, user_id: Optional[int] = None):
        self.user_id = user_id
        super().__init__(message, code=code, status_code=409, details={"user_id": user_id})

class SessionConflict(SessionError):
    """
    Raised when a user already has a live session.
    """
    def __init__(self, user_id: Optional[int] = None):
        super().__init__("An intake session is already in progress", "SESSION_CONFLICT", user_id)

class NoActiveSession(SessionError):
    def __init__(self, user_id: Optional[int] = None):
        super().__init__("No intake session in progress", "NO_ACTIVE_SESSION", user_id)

class SessionExpired(SessionError):
    def __init__(self, user_id: Optional[int] = None):
        super().__init__("The intake session expired", "SESSION_EXPIRED", user_id)

class SessionCancelled(SessionError):
    def __init__(self, user_id: Optional[int] = None):
        super().__init__("The intake session was cancelled", "SESSION_CANCELLED", user_id)


# External services

class ExternalServiceError(SubsBotError):
    """
    Raised when an external service (e.g., Telegram, Mercado Pago) fails.
    """
    def __init__(self, message: str = "External service error", details: Optional[Any] = None, code: str = "EXTERNAL_SERVICE_ERROR"):
        super().__init__(message, code=code, status_code=502, details=details)

class PaymentGatewayError(ExternalServiceError):
    """
    Raised when the payment gateway rejects or fails a request.
    """
    def __init__(self, message: str = "Payment gateway error", details: Optional[Any] = None):
        super().__init__(message, details=details, code="PAYMENT_GATEWAY_ERROR")

class PaymentLookupFailure(ExternalServiceError):
    """
    Raised when a payment status lookup fails. Transient failures rely on
    redelivery by the gateway; permanent ones (unknown id) do not.
    """
    def __init__(self, payment_id: str, message: str = "Payment lookup failed", transient: bool = True, details: Optional[Any] = None):
        self.payment_id = payment_id
        self.transient = transient
        super().__init__(message, details=details, code="PAYMENT_LOOKUP_FAILURE")
        self.status_code = 503

class InvalidPaymentMetadata(SubsBotError):
    """
    Raised when payment metadata fails schema validation at the trust boundary.
    """
    def __init__(self, message: str = "Invalid payment metadata", details: Optional[Any] = None):
        super().__init__(message, code="INVALID_PAYMENT_METADATA", status_code=422, details=details)

class DeliveryError(ExternalServiceError):
    """
    Raised when an outbound chat message cannot be delivered.
    """
    def __init__(self, message: str = "Message delivery failed", details: Optional[Any] = None):
        super().__init__(message, details=details, code="DELIVERY_ERROR")

class ProviderError(ExternalServiceError):
    """
    Raised by the membership provider. `recoverable` marks refusals that
    a fallback invite can work around.
    """
    def __init__(self, message: str = "Membership provider error", recoverable: bool = False, details: Optional[Any] = None):
        self.recoverable = recoverable
        super().__init__(message, details=details, code="PROVIDER_ERROR")


# Provisioning

class ProvisionRecoverableFailure(SubsBotError):
    """
    Direct grant refused; the fallback invite path applies.
    """
    def __init__(self, message: str = "Direct grant refused", details: Optional[Any] = None):
        super().__init__(message, code="PROVISION_RECOVERABLE", status_code=502, details=details)

class ProvisionFatalFailure(SubsBotError):
    """
    Access could not be provisioned at all. Goes to the operator, not the user.
    """
    def __init__(self, message: str = "Provisioning failed", details: Optional[Any] = None):
        super().__init__(message, code="PROVISION_FATAL", status_code=500, details=details)


# Persistence

class PersistenceError(ExternalServiceError):
    """
    Raised when a database operation fails.
    """
    def __init__(self, message: str = "Database operation failed", details: Optional[Any] = None):
        super().__init__(message, details=details, code="PERSISTENCE_ERROR")
        self.status_code = 503
