"""Error taxonomy shared by the quiz core and the HTTP layer."""

from __future__ import annotations


class QuizError(Exception):
    """Base class for every error the quiz core raises to its caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(QuizError):
    """Malformed input: empty title, too few options, index out of range."""

    status_code = 400


class AuthorizationError(QuizError):
    """A non-owner attempted an owner-only transition."""

    status_code = 403


class NotFoundError(QuizError):
    status_code = 404


class InvalidStateError(QuizError):
    """The quiz is not in a state that allows the operation."""

    status_code = 409


class VersionConflict(QuizError):
    """A concurrent write won the compare-and-swap; re-read and reapply."""

    status_code = 409


class TransientError(QuizError):
    """The database timed out or is unreachable; safe to retry."""

    status_code = 503
