"""
Notifier - transient user-facing results of channel and takeover actions.

The presentation layer renders these as toasts; here they are kept in a
bounded buffer and logged.
"""
import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from govconnect.core.exceptions import AppException, ErrorCategory, classify
from govconnect.core.logging import get_logger

logger = get_logger(__name__)


class NotificationLevel(str, enum.Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    title: str
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationListener = Callable[[Notification], None]


class Notifier:
    """Collects notifications and forwards them to optional listeners"""

    def __init__(self, max_items: int = 50) -> None:
        self._items: deque[Notification] = deque(maxlen=max_items)
        self._listeners: list[NotificationListener] = []

    @property
    def items(self) -> list[Notification]:
        return list(self._items)

    @property
    def last(self) -> Optional[Notification]:
        return self._items[-1] if self._items else None

    def subscribe(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def clear(self) -> None:
        self._items.clear()

    def notify(self, level: NotificationLevel, title: str, description: str = "") -> Notification:
        notification = Notification(level=level, title=title, description=description)
        self._items.append(notification)
        logger.info(
            f"Notification: {title}",
            extra_data={"level": level.value, "description": description},
        )
        for listener in self._listeners:
            listener(notification)
        return notification

    def success(self, title: str, description: str = "") -> Notification:
        return self.notify(NotificationLevel.SUCCESS, title, description)

    def info(self, title: str, description: str = "") -> Notification:
        return self.notify(NotificationLevel.INFO, title, description)

    def warning(self, title: str, description: str = "") -> Notification:
        return self.notify(NotificationLevel.WARNING, title, description)

    def error(self, title: str, description: str = "") -> Notification:
        return self.notify(NotificationLevel.ERROR, title, description)

    def failure(self, title: str, exc: BaseException) -> Optional[Notification]:
        """
        Surface a failed operation.

        Absence is normal flow (no session yet, conversation gone) and is not
        shown as an error.
        """
        category = classify(exc)
        if category == ErrorCategory.ABSENCE:
            return None
        description = exc.message if isinstance(exc, AppException) else str(exc)
        return self.error(title, description)
