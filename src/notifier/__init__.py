"""Notifier - preference gates, sound cues, push delivery and the user feed."""

from src.notifier.dispatcher import NotificationDispatcher
from src.notifier.feed import NotificationFeed
from src.notifier.push import HttpPushSender, LoggingPushSender, TaskSupervisor

__all__ = [
    "HttpPushSender",
    "LoggingPushSender",
    "NotificationDispatcher",
    "NotificationFeed",
    "TaskSupervisor",
]
