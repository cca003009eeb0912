from typing import Any, Optional


class DeepSearchError(Exception):
    """Base class for failures the turn pipeline knows how to classify."""


class AuthorizationError(DeepSearchError):
    pass


class OwnershipViolation(DeepSearchError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} belongs to another user")
        self.conversation_id = conversation_id


class StorageError(DeepSearchError):
    pass


class RetrievalError(DeepSearchError):
    """A search or page fetch failed. Fed back to the model, never fatal to a turn."""

    def __init__(self, reason: str, detail: Any = None, status_code: Optional[int] = None):
        message = reason if detail in (None, "") else f"{reason}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail
        self.status_code = status_code


class ModelGenerationError(DeepSearchError):
    pass


class TurnCancelled(DeepSearchError):
    pass
