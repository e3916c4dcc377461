"""Domain-specific exceptions for noknok.

Domain exceptions represent business rule violations and store failures.
Each carries the HTTP status the API layer answers with; the message is
the human string placed in the `{"error": ...}` body.
"""


class DomainError(Exception):
    """Base exception for domain layer errors.

    Domain errors represent violations of business rules or constraints
    that are enforced at the service layer.
    """

    status_code: int = 500

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message
            context: Additional context about the error (logged, never returned)
        """
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ValidationError(DomainError):
    """Bad input shape, bad role, bad username."""

    status_code = 400


class AuthenticationError(DomainError):
    """No session, or a session that no longer validates."""

    status_code = 401


class PermissionDeniedError(DomainError):
    """Authenticated caller lacks the rights for the operation.

    Example:
        raise PermissionDeniedError(
            "cannot delete seed owner",
            context={"user_id": 1, "caller": "alice.example.com"},
        )
    """

    status_code = 403


class NotFoundError(DomainError):
    """Referenced row does not exist."""

    status_code = 404


class ConflictError(DomainError):
    """Unique constraint would be violated."""

    status_code = 409


class StoreError(DomainError):
    """Persistence layer failure (connection lost, query failed)."""

    status_code = 500
