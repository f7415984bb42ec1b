"""Custom exception classes for the entitlement service."""


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class DefaultSecretKeyError(ConfigurationError):
    """Raised when default JWT secret key is used in production."""

    def __init__(self) -> None:
        super().__init__(
            "JWT_SECRET_KEY must be set explicitly in production. "
            "Set the JWT_SECRET_KEY environment variable to a secure random string.",
        )


class ShortSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is too short in production."""

    def __init__(self) -> None:
        super().__init__("JWT_SECRET_KEY must be at least 32 characters in production.")


class EntitlementError(Exception):
    """Base exception for entitlement store and billing failures."""


class SubscriberNotFoundError(EntitlementError):
    """Raised when an operation targets a subscriber record that does not exist."""

    def __init__(self, subscriber_id: str) -> None:
        self.subscriber_id = subscriber_id
        super().__init__(f"Subscriber not found: {subscriber_id}")


class TransientStoreConflictError(EntitlementError):
    """Raised when an optimistic update keeps losing to concurrent writers."""

    def __init__(self, subscriber_id: str, attempts: int) -> None:
        self.subscriber_id = subscriber_id
        self.attempts = attempts
        super().__init__(
            f"Conflicting concurrent updates for subscriber {subscriber_id} "
            f"after {attempts} attempts"
        )


class StoreUnavailableError(EntitlementError):
    """Raised when the entitlement store cannot answer within the request deadline."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Entitlement store unavailable during {operation}: {reason}")


class BillingReferenceConflictError(EntitlementError):
    """Raised when a billing reference cannot be linked to a subscriber.

    Either the subscriber already carries a different reference, or the
    reference belongs to another subscriber.
    """

    def __init__(self, subscriber_id: str, billing_reference_id: str) -> None:
        self.subscriber_id = subscriber_id
        self.billing_reference_id = billing_reference_id
        super().__init__(
            f"Billing reference {billing_reference_id} conflicts with the existing "
            f"link for subscriber {subscriber_id}"
        )


class BillingGatewayError(EntitlementError):
    """Base exception for billing provider call failures."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class BillingGatewayNotConfiguredError(BillingGatewayError):
    """Raised when billing credentials are missing."""

    def __init__(self, missing: str) -> None:
        self.missing = missing
        super().__init__(f"Billing gateway not configured: {missing} is not set")
