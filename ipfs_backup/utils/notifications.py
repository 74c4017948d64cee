"""
Webhook notifications for backup events.

Delivery is fire-and-forget: a failed delivery is logged and never changes
the outcome of the operation that triggered it.
"""

import logging
from typing import Any, Dict, Optional

import requests

from ipfs_backup.models import format_timestamp, utcnow


logger = logging.getLogger(__name__)

SERVICE_NAME = 'mongodb-backup'


class NotificationDeliveryFailed(Exception):
    """Raised when a webhook notification cannot be delivered."""
    pass


class Notifier:
    """Posts structured backup events to a webhook."""

    def __init__(self, webhook_url: str = '', enabled: bool = False, timeout: int = 10):
        self.webhook_url = webhook_url
        self.enabled = enabled
        self.timeout = timeout

    @classmethod
    def from_config(cls, settings) -> 'Notifier':
        return cls(
            webhook_url=settings.get('WEBHOOK_URL', ''),
            enabled=settings.get('WEBHOOK_ENABLED', False),
        )

    @property
    def is_active(self) -> bool:
        return bool(self.enabled and self.webhook_url)

    def send(self, event_type: str, title: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send a notification, swallowing delivery errors.

        Args:
            event_type: 'success', 'failure' or 'info'
            title: Human readable title
            data: Extra payload fields

        Returns:
            True if the webhook accepted the event
        """
        if not self.is_active:
            logger.debug("Webhook notifications disabled or URL not configured")
            return False

        try:
            self._post(event_type, title, data or {})
            return True
        except NotificationDeliveryFailed as e:
            logger.warning(f"Failed to send {event_type} notification '{title}': {e}")
            return False

    def _post(self, event_type: str, title: str, data: Dict[str, Any]):
        payload = {
            'type': event_type,
            'title': title,
            'timestamp': format_timestamp(utcnow()),
            'service': SERVICE_NAME,
        }
        payload.update({k: v for k, v in data.items() if v is not None})

        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationDeliveryFailed(str(e)) from e

        logger.debug(f"Notification sent: {event_type} {title}")

    def backup_success(self, backup_type: str, content_address: str, size_bytes: int,
                       duration_seconds: float) -> bool:
        return self.send('success', 'Backup Completed Successfully', {
            'backupType': backup_type,
            'contentAddress': content_address,
            'sizeBytes': size_bytes,
            'durationSeconds': duration_seconds,
        })

    def backup_failure(self, backup_type: str, error: BaseException) -> bool:
        return self.send('failure', 'Backup Failed', {
            'backupType': backup_type,
            'error': f"{type(error).__name__}: {error}",
        })

    def retention_cleanup(self, deleted_count: int, freed_bytes: int, error_count: int = 0) -> bool:
        return self.send('info', 'Retention Cleanup Completed', {
            'deletedBackups': deleted_count,
            'freedBytes': freed_bytes,
            'errors': error_count,
        })
