"""Local inference backends and the model lifecycle that drives them."""

from .backend import InferenceBackend, BackendHandle
from .llama_server_backend import LlamaServerBackend
from .model_lifecycle import ModelLifecycleManager

__all__ = [
    'InferenceBackend',
    'BackendHandle',
    'LlamaServerBackend',
    'ModelLifecycleManager',
]
