"""Exception types shared across the discussion engine."""


class BoardroomError(Exception):
    """Base class for all boardroom errors."""


class TranscriptError(BoardroomError):
    """Raised when an append would break transcript ordering or references."""


class InvalidModerationCommand(BoardroomError):
    """Raised when a moderation command carries an invalid argument."""


class RunAlreadyActive(BoardroomError):
    """Raised when a discussion is started while another is still running."""
