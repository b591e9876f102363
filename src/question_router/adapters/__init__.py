"""Concrete implementations of chat and store interfaces."""

from .chat.slack import SlackAdapter
from .store.memory import InMemoryStore
from .store.sql import SqlStore

__all__ = [
    "InMemoryStore",
    "SlackAdapter",
    "SqlStore",
]
