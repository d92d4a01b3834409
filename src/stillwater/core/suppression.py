"""Environment-driven suppression, independent of the stress signal itself."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from stillwater.core.clock import ClockSource, SystemClock
from stillwater.logger import get_logger
from stillwater.model.models import Allowed, DelayFor, NeverNow, SuppressionResult

logger = get_logger("suppression")

# 既知のビデオ会議アプリ（macOS のバンドル ID と Windows のプロセス名）
VIDEO_CALL_APP_IDS = frozenset(
    {
        "us.zoom.xos",
        "com.apple.facetime",
        "com.microsoft.teams2",
        "com.tinyspeck.slackmacgap",
        "zoom.exe",
        "ms-teams.exe",
        "teams.exe",
        "slack.exe",
    }
)

# 全画面プレゼンテーションになりうるアプリ
PRESENTATION_APP_IDS = frozenset(
    {
        "com.apple.keynote",
        "com.microsoft.powerpoint",
        "com.google.chrome",
        "powerpnt.exe",
        "chrome.exe",
    }
)

TYPING_WINDOW_SECONDS = 5.0
DELAY_SECONDS = 120
EARLY_ACTIVE_WINDOW = timedelta(minutes=30)


@dataclass(frozen=True)
class AppInfo:
    """A running application as seen by the environment probe."""

    identifier: str
    name: str | None = None
    is_active: bool = False
    is_hidden: bool = False


class SystemEnvironment(Protocol):
    """同期・非ブロッキングな環境クエリ."""

    def frontmost_app(self) -> AppInfo | None: ...

    def is_fullscreen(self) -> bool: ...

    def hides_dock(self) -> bool: ...

    def running_apps(self) -> list[AppInfo]: ...

    def seconds_since_keyboard_event(self) -> float | None: ...


class NullEnvironment:
    """環境を読めないプラットフォーム用. 常に「抑制なし」になる."""

    def frontmost_app(self) -> AppInfo | None:
        return None

    def is_fullscreen(self) -> bool:
        return False

    def hides_dock(self) -> bool:
        return False

    def running_apps(self) -> list[AppInfo]:
        return []

    def seconds_since_keyboard_event(self) -> float | None:
        return None


class SuppressionGate:
    """Hard-block or soft-delay nudges based on what the user is doing.

    The only state is the latched screen-lock flag, pushed in through
    :meth:`on_screen_locked` / :meth:`on_screen_unlocked`.
    """

    def __init__(
        self,
        environment: SystemEnvironment | None = None,
        clock: ClockSource | None = None,
        active_hours_start: int = 9,
    ) -> None:
        self.environment: SystemEnvironment = environment or NullEnvironment()
        self.clock = clock or SystemClock()
        self.active_hours_start = active_hours_start
        self.is_screen_locked = False

    def on_screen_locked(self) -> None:
        self.is_screen_locked = True

    def on_screen_unlocked(self) -> None:
        self.is_screen_locked = False

    def evaluate(self) -> SuppressionResult:
        """現在の環境で通知してよいか判定する."""
        if self.is_screen_locked:
            return NeverNow("screen_locked")
        if self._is_frontmost_fullscreen():
            return NeverNow("fullscreen_app")
        if self._is_video_call_active():
            return NeverNow("video_call_active")
        if self._is_actively_typing():
            return DelayFor(DELAY_SECONDS, "active_typing")
        if self._is_within_first_active_minutes():
            return DelayFor(DELAY_SECONDS, "early_active_hours")
        return Allowed()

    def _is_frontmost_fullscreen(self) -> bool:
        try:
            frontmost = self.environment.frontmost_app()
            if frontmost is None:
                return False
            if self.environment.is_fullscreen():
                return True
            return (
                frontmost.identifier.lower() in PRESENTATION_APP_IDS
                and self.environment.hides_dock()
            )
        except Exception as e:  # noqa: BLE001
            logger.debug("fullscreen probe failed: %s", e)
            return False

    def _is_video_call_active(self) -> bool:
        try:
            apps = self.environment.running_apps()
        except Exception as e:  # noqa: BLE001
            logger.debug("running apps probe failed: %s", e)
            return False
        return any(
            app.identifier.lower() in VIDEO_CALL_APP_IDS
            and not app.is_hidden
            and app.is_active
            for app in apps
        )

    def _is_actively_typing(self) -> bool:
        try:
            elapsed = self.environment.seconds_since_keyboard_event()
        except Exception as e:  # noqa: BLE001
            logger.debug("keyboard probe failed: %s", e)
            return False
        return elapsed is not None and elapsed < TYPING_WINDOW_SECONDS

    def _is_within_first_active_minutes(self) -> bool:
        now = self.clock.now()
        start = now.replace(
            hour=self.active_hours_start, minute=0, second=0, microsecond=0
        )
        return start <= now < start + EARLY_ACTIVE_WINDOW
