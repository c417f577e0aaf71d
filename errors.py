"""Domain errors shared by the stores, managers and API layer.

Every failure the service reports on purpose is one of these. The API layer
maps the error code to an HTTP status; the message is safe to show users.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    REGISTRATION_NOT_FOUND = "REGISTRATION_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    DUPLICATE_REGISTRATION = "DUPLICATE_REGISTRATION"
    DUPLICATE_USER = "DUPLICATE_USER"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Raised when input is well-typed but semantically invalid."""

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(code=ErrorCode.VALIDATION_ERROR, message=message)
        self.errors = errors or []


class UnauthorizedError(DomainError):
    def __init__(self, message: str = "Credenciales incorrectas") -> None:
        super().__init__(code=ErrorCode.UNAUTHORIZED, message=message)


class ForbiddenError(DomainError):
    def __init__(self, message: str = "Permisos insuficientes") -> None:
        super().__init__(code=ErrorCode.FORBIDDEN, message=message)


class InvalidTokenError(DomainError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.INVALID_TOKEN, message="Token inválido o expirado")


class EventNotFoundError(DomainError):
    """Raised when an event does not exist, or is not active where it must be."""

    def __init__(self, event_id: int, active_only: bool = False) -> None:
        message = "Evento no encontrado o no está activo" if active_only else "Evento no encontrado"
        super().__init__(code=ErrorCode.EVENT_NOT_FOUND, message=message)
        self.event_id = event_id


class RegistrationNotFoundError(DomainError):
    def __init__(self, registration_id: int) -> None:
        super().__init__(code=ErrorCode.REGISTRATION_NOT_FOUND, message="Inscripción no encontrada")
        self.registration_id = registration_id


class UserNotFoundError(DomainError):
    def __init__(self, user_id: int) -> None:
        super().__init__(code=ErrorCode.USER_NOT_FOUND, message="Usuario no encontrado")
        self.user_id = user_id


class CapacityExceededError(DomainError):
    """Raised when an event has no free places left."""

    def __init__(self, event_id: int) -> None:
        super().__init__(
            code=ErrorCode.CAPACITY_EXCEEDED,
            message="El evento ha alcanzado su capacidad máxima",
        )
        self.event_id = event_id


class DuplicateRegistrationError(DomainError):
    """Raised when the email already holds a confirmed registration for the event."""

    def __init__(self, event_id: int, email: str) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_REGISTRATION,
            message="Ya estás inscrito en este evento con este email",
        )
        self.event_id = event_id
        self.email = email


class DuplicateUserError(DomainError):
    def __init__(self, message: str = "El usuario o email ya está registrado") -> None:
        super().__init__(code=ErrorCode.DUPLICATE_USER, message=message)


class ConflictError(DomainError):
    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.CONFLICT, message=message)


class RateLimitedError(DomainError):
    def __init__(self, retry_after: int) -> None:
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message="Demasiados intentos de inicio de sesión. Intenta de nuevo en 15 minutos.",
        )
        self.retry_after = retry_after
