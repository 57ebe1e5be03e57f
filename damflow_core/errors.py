class DamflowError(Exception):
    """Base error for damflow."""


class RecoverableError(DamflowError):
    """Indicates the operation can be retried safely."""


class PermanentError(DamflowError):
    """Indicates the operation should not be retried."""


class ValidationError(DamflowError):
    """Input validation failure."""


class NotFoundError(DamflowError):
    """Requested asset does not exist."""


class InferenceTimeoutError(RecoverableError):
    """A model call exceeded its deadline."""


class MediaTimeoutError(RecoverableError):
    """A media subprocess exceeded its deadline and was killed."""


class RateLimitExceeded(RecoverableError):
    """The model provider rejected a call for rate limiting."""
