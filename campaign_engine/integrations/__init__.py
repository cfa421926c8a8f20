"""External collaborators: delivery channel, contact directory, notifier."""

from .base import ContactDirectory, MessageChannel, Notifier, SendResult
from .http import HttpContactDirectory, HttpMessageChannel, HttpNotifier
from .memory import InMemoryContactDirectory, InMemoryMessageChannel, InMemoryNotifier

__all__ = [
    "ContactDirectory",
    "MessageChannel",
    "Notifier",
    "SendResult",
    "HttpContactDirectory",
    "HttpMessageChannel",
    "HttpNotifier",
    "InMemoryContactDirectory",
    "InMemoryMessageChannel",
    "InMemoryNotifier",
]
