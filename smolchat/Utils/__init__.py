"""Small helpers shared across smolchat."""

from .cancellation import CancellationToken

__all__ = ['CancellationToken']
