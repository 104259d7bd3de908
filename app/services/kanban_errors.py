"""
Error types raised by the board services.
Routes map them to HTTP status codes via status_code.
"""


class KanbanError(Exception):
    """Base exception for board operations."""

    status_code = 500

    def __init__(self, message: str, error_code: str = "kanban_error", recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.recoverable = recoverable


class ItemNotFoundError(KanbanError):
    status_code = 404

    def __init__(self, message: str = "Email item not found"):
        super().__init__(message, error_code="not_found")


class InvalidInputError(KanbanError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, error_code="invalid_input")


class ColumnConflictError(KanbanError):
    """Column set violates a uniqueness rule (names or labels)."""

    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, error_code="conflict")


class UpstreamFailureError(KanbanError):
    """Gmail, OpenAI or the vector index failed and the caller needs to know."""

    status_code = 502

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message, error_code="upstream_failure", recoverable=recoverable)
