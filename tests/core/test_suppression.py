from datetime import datetime

import pytest

from stillwater.core.clock import FixedClock
from stillwater.core.suppression import AppInfo, NullEnvironment, SuppressionGate
from stillwater.model.models import Allowed, DelayFor, NeverNow


class FakeEnvironment:
    """テスト用の環境プローブ"""

    def __init__(self):
        self.frontmost: AppInfo | None = AppInfo("code.exe", is_active=True)
        self.fullscreen = False
        self.dock_hidden = False
        self.apps: list[AppInfo] = []
        self.keyboard_idle: float | None = 60.0
        self.fail: Exception | None = None

    def _check(self):
        if self.fail is not None:
            raise self.fail

    def frontmost_app(self):
        self._check()
        return self.frontmost

    def is_fullscreen(self):
        self._check()
        return self.fullscreen

    def hides_dock(self):
        return self.dock_hidden

    def running_apps(self):
        self._check()
        return self.apps

    def seconds_since_keyboard_event(self):
        self._check()
        return self.keyboard_idle


@pytest.fixture
def env():
    return FakeEnvironment()


@pytest.fixture
def gate(env, clock):
    return SuppressionGate(env, clock, active_hours_start=9)


def test_allowed_by_default(gate):
    assert gate.evaluate() == Allowed()


def test_screen_lock_is_latched(gate):
    gate.on_screen_locked()
    assert gate.evaluate() == NeverNow("screen_locked")
    assert gate.evaluate() == NeverNow("screen_locked")

    gate.on_screen_unlocked()
    assert gate.evaluate() == Allowed()


def test_fullscreen_app(gate, env):
    env.fullscreen = True

    assert gate.evaluate() == NeverNow("fullscreen_app")


def test_presentation_with_hidden_taskbar(gate, env):
    env.frontmost = AppInfo("POWERPNT.EXE", is_active=True)
    env.dock_hidden = True

    assert gate.evaluate() == NeverNow("fullscreen_app")


def test_presentation_app_with_visible_taskbar(gate, env):
    env.frontmost = AppInfo("powerpnt.exe", is_active=True)

    assert gate.evaluate() == Allowed()


def test_video_call_app(gate, env):
    env.apps = [AppInfo("Zoom.exe", is_active=True)]

    assert gate.evaluate() == NeverNow("video_call_active")


@pytest.mark.parametrize(
    "app",
    [AppInfo("zoom.exe", is_active=False), AppInfo("zoom.exe", is_active=True, is_hidden=True)],
)
def test_background_video_app_is_ignored(gate, env, app):
    env.apps = [app]

    assert gate.evaluate() == Allowed()


def test_active_typing_delays(gate, env):
    env.keyboard_idle = 1.5

    assert gate.evaluate() == DelayFor(120, "active_typing")


def test_lock_beats_typing(gate, env):
    env.keyboard_idle = 0.5
    gate.on_screen_locked()

    assert gate.evaluate() == NeverNow("screen_locked")


@pytest.mark.parametrize(
    ("hour", "minute", "expected"),
    [
        (9, 0, DelayFor(120, "early_active_hours")),
        (9, 29, DelayFor(120, "early_active_hours")),
        (9, 30, Allowed()),
        (8, 59, Allowed()),
    ],
)
def test_early_active_hours(env, hour, minute, expected):
    gate = SuppressionGate(env, FixedClock(datetime(2026, 3, 2, hour, minute)))

    assert gate.evaluate() == expected


@pytest.mark.parametrize(
    "error", [OSError("access denied"), RuntimeError("win32 call failed")]
)
def test_probe_failure_is_not_suppressed(gate, env, error):
    env.fullscreen = True
    env.keyboard_idle = 0.1
    env.fail = error

    assert gate.evaluate() == Allowed()


def test_null_environment(clock):
    assert SuppressionGate(NullEnvironment(), clock).evaluate() == Allowed()
