"""
External collaborator clients for the Deal Workflow engine.
"""

from .notification_client import (
    Delivery,
    InMemoryNotificationSink,
    NotificationSink,
    Notifier,
    WebhookNotificationSink,
)
from .openai_client import ContentGenerator, OpenAIContentGenerator

__all__ = [
    'ContentGenerator',
    'OpenAIContentGenerator',
    'Delivery',
    'InMemoryNotificationSink',
    'NotificationSink',
    'Notifier',
    'WebhookNotificationSink',
]
