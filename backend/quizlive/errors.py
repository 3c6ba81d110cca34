"""Structured failures raised by the repository and the game services.

Every failure carries a human readable message and tells the caller whether
retrying the same call can succeed. Nothing in this package retries on its own.
"""


class QuizLiveError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message, retryable=None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self):
        return {'error': self.message, 'retryable': self.retryable}


class ValidationError(QuizLiveError):
    """Missing or malformed input. The operation did nothing."""


class RepositoryError(QuizLiveError):
    status_code = 500


class NotFound(RepositoryError):
    status_code = 404


class ConstraintViolation(RepositoryError):
    """The store rejected a write: duplicate key or missing parent row."""
    status_code = 409


class StorageUnavailable(RepositoryError):
    status_code = 503
    retryable = True


class IllegalTransition(QuizLiveError):
    status_code = 409
