# src/prompt_release/notifications.py
"""
Release notifications.

Workflow and pipeline code calls NotificationService.send() after a state
change has committed. Handlers are plain callables registered per
notification type by the surrounding application (chat webhook, e-mail, UI
refresh). Delivery is best effort: a failing handler is logged and the
calling operation carries on.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from prompt_release.models import utcnow

logger = logging.getLogger(__name__)

APPROVAL_NEEDED = "approval_needed"
APPROVAL_RECEIVED = "approval_received"
APPROVAL_REJECTED = "approval_rejected"
DEPLOYED = "deployed"
REGRESSION_DETECTED = "regression_detected"
ROLLBACK = "rollback"
ROLLBACK_COMPLETE = "rollback_complete"

NOTIFICATION_TYPES = (
    APPROVAL_NEEDED,
    APPROVAL_RECEIVED,
    APPROVAL_REJECTED,
    DEPLOYED,
    REGRESSION_DETECTED,
    ROLLBACK,
    ROLLBACK_COMPLETE,
)

TITLES = {
    APPROVAL_NEEDED: "Approval Needed",
    APPROVAL_RECEIVED: "Approval Received",
    APPROVAL_REJECTED: "Approval Rejected",
    DEPLOYED: "Deployment Complete",
    REGRESSION_DETECTED: "Regression Detected",
    ROLLBACK: "Rollback Initiated",
    ROLLBACK_COMPLETE: "Rollback Complete",
}


@dataclass(frozen=True)
class Notification:
    type: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def title(self) -> str:
        return TITLES.get(self.type, self.type.replace("_", " ").title())


Handler = Callable[[Notification], None]


def format_metadata(metadata: Dict[str, Any]) -> str:
    """Render metadata as `key: value | key: value`, skipping empty values."""
    parts = []
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (dict, list, tuple)):
            value = json.dumps(value, default=str)
        parts.append(f"{key.replace('_', ' ')}: {value}")
    return " | ".join(parts)


class NotificationService:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._handlers: Dict[str, List[Handler]] = {}

    def register_handler(self, notification_type: str, handler: Handler) -> None:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type '{notification_type}'")
        self._handlers.setdefault(notification_type, []).append(handler)
        logger.debug("Registered %s handler %r", notification_type, handler)

    def remove_handler(self, notification_type: str, handler: Handler) -> None:
        handlers = self._handlers.get(notification_type, [])
        self._handlers[notification_type] = [h for h in handlers if h != handler]

    def clear_handlers(self) -> None:
        """Drop every registered handler (useful for tests)."""
        self._handlers.clear()

    def send(self, notification_type: str, message: str, **metadata: Any) -> Optional[Notification]:
        """
        Best-effort delivery to the handlers registered for notification_type.

        Never raises.
        """
        try:
            notification = Notification(type=notification_type, message=message, metadata=metadata)
            if not self.enabled:
                logger.debug("[notification disabled] %s %s", notification_type, message)
                return notification

            logger.info("[%s] %s %s", notification_type.upper(), message, format_metadata(metadata))
            for handler in list(self._handlers.get(notification_type, [])):
                try:
                    handler(notification)
                except Exception as e:
                    logger.exception("Notification handler for %s raised: %s", notification_type, e)
            return notification
        except Exception:
            # Never let notification break workflow / pipeline flows
            logger.exception("NotificationService.send encountered an unexpected error")
            return None
