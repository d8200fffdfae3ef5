"""
Custom exceptions for the smolchat session layer.

Selecting a model is a normal branch and has no exception of its own;
cancellation is reported as a result variant and never raised to callers.
"""


class SmolChatError(Exception):
    """Base exception for all smolchat errors."""
    pass


class ConfigurationError(SmolChatError):
    """Raised when configuration is invalid or cannot be written."""
    pass


class BackendError(SmolChatError):
    """Raised by an inference backend when a call fails."""
    pass


class BackendLoadError(BackendError):
    """Raised when a backend cannot create a model instance or inject the system prompt."""
    pass


class RetrievalError(SmolChatError):
    """Base exception for retrieval failures, including malformed prompts."""
    pass


class RetrievalUnavailable(RetrievalError):
    """Raised when the retrieval service has not finished loading its assets."""
    pass


class RetrievalLoadError(RetrievalError):
    """Raised when retrieval assets cannot be loaded."""
    pass


class GenerationError(SmolChatError):
    """Raised for any failure while building the prompt or streaming a response."""
    pass


class PersistenceError(SmolChatError):
    """Raised when the chat store cannot complete an operation."""
    pass
