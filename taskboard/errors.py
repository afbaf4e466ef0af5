"""Errors raised by task board operations."""


class TaskBoardError(Exception):
    """Base class for task board failures."""
    pass


class NotFound(TaskBoardError):
    """Raised when a referenced task, column, board, agent or cron job is absent."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class InvalidArgument(TaskBoardError):
    """Raised when an operation's input fails validation."""
    pass
