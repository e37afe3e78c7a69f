"""Notification sender port.

Delivery (push, email) lives outside the engine. Notifications are
fire-and-forget: a failing sender is logged and never blocks or undoes a
committed transition.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from raven_engine.models.enums import NotificationKind

LOG = logging.getLogger(__name__)


class NotificationSender(ABC):
    @abstractmethod
    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        """Hand a notification to the delivery system."""


class LogNotificationSender(NotificationSender):
    """Writes notifications to the engine log."""

    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        LOG.info("notify user=%s kind=%s payload=%s", user_id, kind.value, payload)


def dispatch(
    sender: Optional[NotificationSender],
    user_id: Optional[str],
    kind: NotificationKind,
    **payload: Any,
) -> None:
    """Send a notification, logging instead of raising on failure."""
    if sender is None or not user_id:
        return
    try:
        sender.notify(user_id, kind, payload)
    except Exception:  # pragma: no cover - delivery failures are logged, not retried
        LOG.exception("Failed to send %s notification to %s", kind.value, user_id)
