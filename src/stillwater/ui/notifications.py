import platform
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from stillwater.logger import get_logger
from stillwater.model.models import NudgeDecision, NudgeType

if sys.platform == "win32":
    from win10toast import ToastNotifier  # type: ignore[import-untyped, unused-ignore]

logger = get_logger("notifications")

APP_NAME = "Stillwater"


class NotificationLevel(Enum):
    """Notification severity levels used by the service."""

    INFO = "info"
    GENTLE = "gentle"
    PRACTICE = "practice"


@dataclass
class NotificationConfig:
    """Configuration for :class:`NotificationService`."""

    duration: int = 8
    sound: bool = False


class NotificationService:
    """Toast notifications with history tracking.

    Only Windows actually delivers a toast. Elsewhere the notification is
    recorded with ``delivered=False`` so the monitoring page can still show it.
    """

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self.platform = platform.system()
        self.config = config or NotificationConfig()
        self._history: list[dict[str, Any]] = []

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
        *,
        sound: bool | None = None,
    ) -> bool:
        """Display a notification and record it."""
        sound = self.config.sound if sound is None else sound

        success = False
        if self.platform == "Windows":
            notifier = ToastNotifier()
            # threaded=True でトースト表示中もイベントループを止めない
            success = bool(
                notifier.show_toast(  # pyright: ignore[reportUnknownMemberType]
                    title, message, duration=self.config.duration, threaded=True
                )
            )
        self._history.append(
            {
                "title": title,
                "message": message,
                "level": level.value,
                "sound": sound,
                "timestamp": time.time(),
                "delivered": success,
            },
        )
        logger.info("notify [%s] %s (delivered=%s)", level.value, title, success)
        return success

    def notify_nudge(self, decision: NudgeDecision) -> bool:
        """承認されたナッジを種類に応じたタイトル・レベルで通知する."""
        match decision.nudge_type:
            case NudgeType.PRACTICE:
                title = f"{APP_NAME} - Take a moment"
                level = NotificationLevel.PRACTICE
                message = decision.message or "A short practice might help."
                if decision.suggested_practice_id:
                    message += f"\nSuggested: {decision.suggested_practice_id}"
            case NudgeType.ENCOURAGEMENT:
                title = APP_NAME
                level = NotificationLevel.GENTLE
                message = decision.message or "You're doing fine. Keep going."
            case _:
                title = APP_NAME
                level = NotificationLevel.INFO
                message = decision.message or "Nice work staying steady."
        return self.notify(title, message, level)

    # ------------------------------------------------------------------
    # Query helpers
    def get_capabilities(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "supports_toast": self.platform == "Windows",
        }

    def get_notification_history(self) -> list[dict[str, Any]]:
        """Return a copy of the notification history."""
        return list(self._history)
