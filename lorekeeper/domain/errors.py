from typing import Any, Dict, Optional


class ActivationError(Exception):
    """Base error for the activation engine"""

    code = "ACTIVATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ActivationError):
    """Entry or engine configuration rejected at load time"""
    code = "CONFIGURATION_ERROR"


class TurnOrderError(ActivationError):
    """A turn arrived with a message index that is not after the last processed one"""
    code = "TURN_ORDER_ERROR"


class SimilarityServiceError(ActivationError):
    """The embedding/similarity collaborator failed or timed out"""
    code = "SIMILARITY_SERVICE_ERROR"


class ConversationNotFoundError(ActivationError):
    code = "CONVERSATION_NOT_FOUND"


class MemoryNotFoundError(ActivationError):
    code = "MEMORY_NOT_FOUND"
