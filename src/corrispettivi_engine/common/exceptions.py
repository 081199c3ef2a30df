"""Corrispettivi-Engine exception hierarchy."""


class CorrispettiviError(Exception):
    """Base exception for all Corrispettivi errors."""

    def __init__(self, message: str = "", code: str = "CORRISPETTIVI_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class StateError(CorrispettiviError):
    """Raised when an operation is invalid in the current session or job state."""

    def __init__(self, message: str = "Operation not allowed in current state"):
        super().__init__(message, code="INVALID_STATE")


class ValidationError(CorrispettiviError):
    """Raised on malformed input: missing fields, negative amounts, bad numbering."""

    def __init__(self, message: str = "Invalid input", errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message, code="INVALID_INPUT")


class IntegrityError(CorrispettiviError):
    """Raised when a hash chain is broken or declared totals do not match."""

    def __init__(self, message: str = "Integrity check failed", errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message, code="INTEGRITY_ERROR")


class TransportError(CorrispettiviError):
    """Raised on network failures or timeouts talking to a collaborator."""

    def __init__(self, message: str = "Transport failure", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, code="TRANSPORT_ERROR")


class NotFoundError(CorrispettiviError):
    """Raised when a job, artifact or entity cannot be found."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND")
