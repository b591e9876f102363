"""Protocol definitions for pluggable adapters."""

from .chat import ChatEventSource
from .notifier import Notifier
from .store import EventLog, QuestionStore, RouterStore, SettingsStore

__all__ = [
    "ChatEventSource",
    "EventLog",
    "Notifier",
    "QuestionStore",
    "RouterStore",
    "SettingsStore",
]
