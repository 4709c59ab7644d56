"""Errors raised while handling a request for a single room.

Each one is reported back to the sender only; none of them leaves the
originating request.
"""


class QuizError(Exception):
    """Base class for request-local failures."""
    pass


class ValidationError(QuizError):
    """Malformed payload, missing field or invalid question batch."""
    pass


class AuthorizationError(QuizError):
    """A non-host attempted a host-only action."""
    pass


class NotFoundError(QuizError):
    """Unknown room code or the sender has no player in the room."""
    pass


class ConflictError(QuizError):
    """The request clashes with current state (duplicate answer, quiz already started, full room)."""
    pass
