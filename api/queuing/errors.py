"""
Error taxonomy for the queue and matching engine
"""


class QueueError(Exception):
    """Base class for queue errors"""


class AlreadyQueued(QueueError):
    """Raised when Join is called for a user that already has a WAITING entry"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is already waiting in the queue")


class NotFound(QueueError):
    """Raised when a user has no WAITING entry"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not in the queue")


class TransientStoreError(QueueError):
    """Raised when the relational store or the waiting index is unavailable"""

    def __init__(self, operation: str, original_error: Exception | None = None):
        self.operation = operation
        self.original_error = original_error
        detail = f": {original_error}" if original_error else ""
        super().__init__(f"Store unavailable during {operation}{detail}")


class InconsistentState(QueueError):
    """Raised when the store and the index disagree about a user"""

    def __init__(self, user_id: str, detail: str):
        self.user_id = user_id
        self.detail = detail
        super().__init__(f"Inconsistent queue state for {user_id}: {detail}")
