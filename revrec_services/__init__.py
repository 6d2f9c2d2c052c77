"""
Stateful services: reconciliation runs over the store, alert
notification and its delivery channels.
"""

from revrec_services.channels import (
    AlertMessage,
    EmailChannel,
    NotificationChannel,
    WebhookChannel,
    build_channels,
)
from revrec_services.notifier import AlertNotifier, NotificationDecision, should_notify
from revrec_services.reconciliation_service import ReconciliationService

__all__ = [
    "AlertMessage",
    "AlertNotifier",
    "EmailChannel",
    "NotificationChannel",
    "NotificationDecision",
    "ReconciliationService",
    "WebhookChannel",
    "build_channels",
    "should_notify",
]
