import asyncio
import sys
import time
from collections import Counter, deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, cast

import psutil

from stillwater.core.clock import ClockSource, SystemClock
from stillwater.core.suppression import VIDEO_CALL_APP_IDS, AppInfo, NullEnvironment
from stillwater.logger import get_logger
from stillwater.model.models import BehaviorMetrics, SystemContext
from stillwater.watchers.idle import get_idle_seconds, seconds_since_keyboard_event

if sys.platform == "win32":
    import pywintypes  # pyright: ignore[reportMissingImports]
    import win32api  # pyright: ignore[reportMissingImports]
    import win32gui  # pyright: ignore[reportMissingImports]
    import win32process  # pyright: ignore[reportMissingImports]
else:  # pragma: no cover
    pywintypes = cast("Any", None)
    win32api = cast("Any", None)
    win32gui = cast("Any", None)
    win32process = cast("Any", None)

logger = get_logger("active_window")

POLL_SECONDS = 2.0
ACTIVITY_WINDOW = timedelta(minutes=5)
RECENT_APPS = 10


def get_active_app() -> dict[str, str | None]:
    """Return the foreground application on Windows."""
    if sys.platform != "win32":
        return {"active_app": None, "title": None}

    hwnd = win32gui.GetForegroundWindow()
    if not hwnd:
        return {"active_app": None, "title": None}

    try:
        title = win32gui.GetWindowText(hwnd)
        _, pid = win32process.GetWindowThreadProcessId(hwnd)
    except pywintypes.error:
        return {"active_app": None, "title": None}

    try:
        process_name = psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return {"active_app": None, "title": None}
    return {"active_app": process_name, "title": title}


def count_open_windows() -> int:
    """表示中のトップレベルウィンドウ数（Windows 以外は 0）."""
    if sys.platform != "win32":
        return 0
    handles: list[int] = []

    def _collect(hwnd: int, _: object) -> bool:
        if win32gui.IsWindowVisible(hwnd) and win32gui.GetWindowText(hwnd):
            handles.append(hwnd)
        return True

    try:
        win32gui.EnumWindows(_collect, None)
    except pywintypes.error:
        return 0
    return len(handles)


class WindowsEnvironment:
    """SystemEnvironment backed by pywin32 + psutil.

    pywin32 のエラーは ``OSError`` に変換して投げる（ゲート側で「抑制なし」に落ちる）。
    """

    def frontmost_app(self) -> AppInfo | None:
        app = get_active_app()
        if not app["active_app"]:
            return None
        return AppInfo(
            identifier=app["active_app"].lower(), name=app["title"], is_active=True
        )

    def is_fullscreen(self) -> bool:
        try:
            hwnd = win32gui.GetForegroundWindow()
            if not hwnd:
                return False
            # デスクトップ/シェル自体は全画面扱いしない
            if win32gui.GetClassName(hwnd) in {"Progman", "WorkerW"}:
                return False
            left, top, right, bottom = win32gui.GetWindowRect(hwnd)
            monitor = win32api.MonitorFromWindow(hwnd)
            m_left, m_top, m_right, m_bottom = win32api.GetMonitorInfo(monitor)[
                "Monitor"
            ]
        except pywintypes.error as e:
            raise OSError(str(e)) from e
        return (left, top, right, bottom) == (m_left, m_top, m_right, m_bottom)

    def hides_dock(self) -> bool:
        try:
            taskbar = win32gui.FindWindow("Shell_TrayWnd", None)
            return not (taskbar and win32gui.IsWindowVisible(taskbar))
        except pywintypes.error as e:
            raise OSError(str(e)) from e

    def running_apps(self) -> list[AppInfo]:
        frontmost = self.frontmost_app()
        active_id = frontmost.identifier if frontmost else None
        apps: dict[str, AppInfo] = {}
        for proc in psutil.process_iter(["name"]):
            name = proc.info.get("name")
            if not name:
                continue
            identifier = name.lower()
            apps[identifier] = AppInfo(
                identifier=identifier,
                name=name,
                is_active=identifier == active_id,
            )
        return list(apps.values())

    def seconds_since_keyboard_event(self) -> float | None:
        return seconds_since_keyboard_event()


def default_environment() -> WindowsEnvironment | NullEnvironment:
    """プラットフォームに合った環境プローブを返す."""
    if sys.platform == "win32":
        return WindowsEnvironment()
    return NullEnvironment()


class ActivityMonitor:
    """前面アプリの切り替えを追跡し、直近 5 分の行動メトリクスを作る.

    ``start()`` で 2 秒ごとのポーリングタスクを起動する。テストでは
    :meth:`observe` を直接呼んでよい。
    """

    def __init__(
        self,
        probe: Callable[[], dict[str, str | None]] = get_active_app,
        clock: ClockSource | None = None,
        poll_seconds: float = POLL_SECONDS,
    ) -> None:
        self.probe = probe
        self.clock = clock or SystemClock()
        self.poll_seconds = poll_seconds
        self.session_start = self.clock.now()
        self.current_app: str | None = None
        self._switches: deque[tuple[datetime, str]] = deque()
        self._recent: deque[str] = deque(maxlen=RECENT_APPS)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._poll())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def reset(self) -> None:
        """行動履歴を捨ててセッションを始め直す."""
        self.session_start = self.clock.now()
        self.current_app = None
        self._switches.clear()
        self._recent.clear()

    def observe(self, app: str | None) -> bool:
        """前面アプリを 1 回観測する. 切り替えがあれば ``True``."""
        if not app or app == self.current_app:
            return False
        now = self.clock.now()
        self.current_app = app
        self._switches.append((now, app))
        self._recent.append(app)
        self._prune(now)
        return True

    def recent_apps(self) -> tuple[str, ...]:
        return tuple(self._recent)

    def metrics(self) -> BehaviorMetrics:
        now = self.clock.now()
        self._prune(now)
        session = max(0.0, (now - self.session_start).total_seconds())
        window_start = max(now - ACTIVITY_WINDOW, self.session_start)
        window_minutes = max(1.0, (now - window_start).total_seconds() / 60.0)

        # 最初のエントリは「その時点の前面アプリ」なので切り替え回数に数えない
        switches = sum(1 for at, _ in self._switches if at > window_start)
        if self._switches and self._switches[0][0] > window_start:
            switches -= 1

        return BehaviorMetrics(
            context_switches_per_minute=round(max(0, switches) / window_minutes, 3),
            session_duration=session,
            application_focus=self._focus(now, window_start),
            recent_app_sequence=self.recent_apps(),
        )

    def _focus(self, now: datetime, window_start: datetime) -> dict[str, float]:
        span = (now - window_start).total_seconds()
        if span <= 0 or not self._switches:
            return {}
        dwell: Counter[str] = Counter()
        events = list(self._switches)
        for i, (at, app) in enumerate(events):
            end = events[i + 1][0] if i + 1 < len(events) else now
            start = max(at, window_start)
            if end > start:
                dwell[app] += (end - start).total_seconds()
        return {app: round(seconds / span, 3) for app, seconds in dwell.items()}

    def _prune(self, now: datetime) -> None:
        # 窓の開始時点で前面だったアプリを残すため、最後の 1 件は窓外でも保持する
        cutoff = now - ACTIVITY_WINDOW
        while len(self._switches) > 1 and self._switches[1][0] <= cutoff:
            self._switches.popleft()

    async def _poll(self) -> None:
        while True:
            try:
                app = self.probe().get("active_app")
            except OSError as e:
                logger.debug("active window probe failed: %s", e)
            else:
                if self.observe(app):
                    logger.debug("app switch: %s", app)
            await asyncio.sleep(self.poll_seconds)


def build_system_context(monitor: ActivityMonitor | None = None) -> SystemContext:
    """スクリーンショット取得時点の SystemContext を組み立てる."""
    app = get_active_app()
    active = app["active_app"] or "unknown"
    try:
        uptime = time.time() - psutil.boot_time()
    except OSError:
        uptime = 0.0
    return SystemContext(
        active_app=active,
        active_window_title=app["title"],
        open_window_count=count_open_windows(),
        recent_app_switches=monitor.recent_apps() if monitor else (),
        is_on_video_call=active.lower() in VIDEO_CALL_APP_IDS,
        system_uptime=uptime,
        idle_time=get_idle_seconds(),
    )
