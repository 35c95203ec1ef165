"""
Domain Errors

Every error raised by the rental core is a DomainError. Each carries a
human readable message naming the specific reason (staff read these
directly) and a machine ``code`` for the application layer.

Conflicts are never retried by the core: repeating the same allocation
or transition reproduces the same conflict. Only ExternalServiceError
may be marked retryable.
"""


class DomainError(Exception):
    default_code = 'domain_error'

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {'error': self.code, 'message': self.message}


class ValidationError(DomainError):
    """Malformed input: bad window, duration over the maximum, missing reason."""
    default_code = 'validation_error'


class NotFoundError(ValidationError):
    default_code = 'not_found'


class ConflictError(DomainError):
    """The request is well formed but collides with current fleet state."""
    default_code = 'conflict'


class NoUnitsAvailable(ConflictError):
    default_code = 'no_units_available'


class InvalidTransitionError(DomainError):
    """State machine violation, or a lost race on a conditional update."""
    default_code = 'invalid_transition'

    def __init__(self, message: str, code: str | None = None, current_state: str | None = None):
        super().__init__(message, code)
        self.current_state = current_state


class NotAuthenticatedError(DomainError):
    default_code = 'not_authenticated'


class PermissionDeniedError(NotAuthenticatedError):
    default_code = 'permission_denied'


class ExternalServiceError(DomainError):
    """
    Payment provider failure

    ``retryable`` is True for transport errors and 5xx responses; callers
    may retry those with backoff. ``provider_code`` is the provider's own
    error code when one was returned.
    """
    default_code = 'external_service_error'

    def __init__(
        self,
        message: str,
        code: str | None = None,
        *,
        retryable: bool = False,
        provider_code: str | None = None,
    ):
        super().__init__(message, code)
        self.retryable = retryable
        self.provider_code = provider_code
