"""Adaptive sampling loop.

Decides how often to re-sample the analyzer, pauses itself when the user goes
idle, and resets the session when it wakes up after the host system slept.
"""

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from stillwater.core.clock import ClockSource, SystemClock
from stillwater.logger import get_logger
from stillwater.model.models import (
    AnalysisResult,
    EffortLevel,
    NudgeDecision,
    Weather,
)

logger = get_logger("scheduler")


class Interval:
    """サンプリング間隔（秒）."""

    BASE = 300.0
    STORMY = 180.0
    AFTER_PRACTICE = 600.0
    AFTER_DISMISSAL = 900.0
    AFTER_MULTIPLE_DISMISSALS = 900.0
    MAX = 900.0
    MIN = 180.0
    CLEAR_MULTIPLIER = 1.5


CLEARS_BEFORE_BACKOFF = 3
MULTIPLE_DISMISSALS = 3
RECENT_RESULTS = 3
IDLE_PAUSE_SECONDS = 30 * 60.0
RESUME_DEBOUNCE_SECONDS = 60.0
SLEEP_GAP_FACTOR = 2.0


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SAMPLING = "sampling"
    SLEEPING = "sleeping"


@dataclass(frozen=True)
class SampleContext:
    """Everything the sampler needs to know about the session so far."""

    effort_level: EffortLevel
    recent_results: tuple[AnalysisResult, ...]
    dismissal_count: int


class ActivityMonitor(Protocol):
    """アプリ切り替えの購読. スケジューラが開始・停止を管理する."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def reset(self) -> None: ...


Sampler = Callable[[SampleContext], Awaitable[AnalysisResult]]
Decider = Callable[[AnalysisResult], NudgeDecision]


class AdaptiveScheduler:
    """Drives the sample → decide loop as a single asyncio task.

    Args:
        sampler: 1 回のキャプチャ + 解析を行うコルーチン関数
        decide: 解析結果を NudgeDecision に変換する（ホストが提供）
        idle_probe: キーボード/マウス/クリックのうち最小のアイドル秒数を返す
        clock: 時刻源（テストでは FixedClock）
        activity_monitor: アプリ切り替えの購読ハンドル
        sleep: 間隔待ちの実装. 既定は ``trigger_immediate_check`` で起こせる待機

    """

    def __init__(  # noqa: PLR0913
        self,
        sampler: Sampler,
        *,
        decide: Decider | None = None,
        idle_probe: Callable[[], float] | None = None,
        clock: ClockSource | None = None,
        activity_monitor: ActivityMonitor | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        on_sample: Callable[[Weather, AnalysisResult], None] | None = None,
        on_silence: Callable[[str, Weather, tuple[str, ...]], None] | None = None,
        on_nudge: Callable[[NudgeDecision, AnalysisResult], None] | None = None,
        on_diagnostic: Callable[[str], None] | None = None,
        on_auto_pause: Callable[[], None] | None = None,
    ) -> None:
        self.sampler = sampler
        self.decide = decide
        self.idle_probe = idle_probe
        self.clock = clock or SystemClock()
        self.activity_monitor = activity_monitor
        self._sleep = sleep or self._interruptible_sleep

        self.on_sample = on_sample
        self.on_silence = on_silence
        self.on_nudge = on_nudge
        self.on_diagnostic = on_diagnostic
        self.on_auto_pause = on_auto_pause

        self.state = SchedulerState.IDLE
        self.current_interval = Interval.BASE
        self.consecutive_clear_count = 0
        self.dismissal_count = 0
        self.last_sample_at: datetime | None = None
        self._recent: deque[AnalysisResult] = deque(maxlen=RECENT_RESULTS)

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # 公開 API

    @property
    def running(self) -> bool:
        return self._running

    @property
    def recent_results(self) -> tuple[AnalysisResult, ...]:
        return tuple(self._recent)

    @property
    def task(self) -> "asyncio.Task[None] | None":
        return self._task

    def start(self) -> None:
        """ループを開始する. 既存のループタスクは置き換える.

        直前のサンプルが 60 秒以内なら間隔とカウンタを維持したまま再開する。
        実行中のイベントループ内から呼ぶこと。
        """
        now = self.clock.now()
        recently_sampled = (
            self.last_sample_at is not None
            and (now - self.last_sample_at).total_seconds() < RESUME_DEBOUNCE_SECONDS
        )
        if recently_sampled:
            self._diagnose("Monitoring resumed")
        else:
            self.current_interval = Interval.BASE
            self.consecutive_clear_count = 0
            self.dismissal_count = 0
            self._diagnose("Monitoring started")

        if self._task is not None and not self._task.done():
            self._task.cancel()

        self._running = True
        self._wake = asyncio.Event()
        self.state = SchedulerState.RUNNING
        if self.activity_monitor is not None:
            self.activity_monitor.start()
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self) -> None:
        """協調的に停止する. 解析中のサンプルは自然に終わらせる."""
        self._halt()
        self._diagnose("Monitoring stopped")

    def trigger_immediate_check(self) -> None:
        """スリープ中なら待機を打ち切って次のサンプルに進む."""
        if self._wake is not None:
            self._wake.set()

    def record_practice_completed(self) -> None:
        self.current_interval = Interval.AFTER_PRACTICE
        self.consecutive_clear_count = 0
        self.dismissal_count = 0

    def record_dismissal(self) -> None:
        self.dismissal_count += 1
        if self.dismissal_count >= MULTIPLE_DISMISSALS:
            self.current_interval = Interval.AFTER_MULTIPLE_DISMISSALS
        else:
            self.current_interval = Interval.AFTER_DISMISSAL

    def reset_session(self) -> None:
        """行動履歴・カウンタ・最終サンプル時刻をすべて初期化する."""
        self.current_interval = Interval.BASE
        self.consecutive_clear_count = 0
        self.dismissal_count = 0
        self.last_sample_at = None
        self._recent.clear()
        if self.activity_monitor is not None:
            self.activity_monitor.reset()

    def effort_level(self) -> EffortLevel:
        """直近 3 件に stormy があるか、このセッションで却下があれば HIGH."""
        if self.dismissal_count > 0 or any(
            r.weather is Weather.STORMY for r in self._recent
        ):
            return EffortLevel.HIGH
        return EffortLevel.LOW

    # ------------------------------------------------------------------
    # ループ本体

    async def _loop(self) -> None:
        try:
            while self._running:
                if self._check_idle():
                    break
                await self.run_once()
                if not self._running:
                    break
                await self._sleep_for_interval()
        finally:
            if asyncio.current_task() is self._task:
                self._running = False
                self.state = SchedulerState.IDLE

    async def run_once(self) -> AnalysisResult | None:
        """1 回サンプルして間隔を更新する. 失敗時は ``None``."""
        self.state = SchedulerState.SAMPLING
        context = SampleContext(
            effort_level=self.effort_level(),
            recent_results=self.recent_results,
            dismissal_count=self.dismissal_count,
        )
        try:
            result = await self.sampler(context)
        except Exception as e:  # noqa: BLE001
            # どんな失敗でも同じ扱い: バックオフして続行
            self._back_off("sample", e)
            return None
        finally:
            self.state = (
                SchedulerState.RUNNING if self._running else SchedulerState.IDLE
            )

        self.last_sample_at = self.clock.now()
        self._recent.append(result)
        try:
            if self.on_sample is not None:
                self.on_sample(result.weather, result)
            if self.decide is not None:
                self._dispatch_decision(result, self.decide(result))
        except Exception as e:  # noqa: BLE001
            # コールバック側の失敗でもループは止めない
            self._back_off("decision", e)
            return None

        self._adjust_interval(result.weather)
        self._diagnose(
            f"{result.weather.display_name} ({result.confidence:.0%}), "
            f"next check in {self.current_interval / 60:.1f} min"
        )
        return result

    def _back_off(self, stage: str, error: Exception) -> None:
        self.current_interval = max(self.current_interval, Interval.AFTER_PRACTICE)
        logger.warning("%s failed: %s", stage, error)
        self._diagnose(f"Check failed ({type(error).__name__}): {error}")

    def _dispatch_decision(self, result: AnalysisResult, decision: NudgeDecision) -> None:
        if decision.should_show:
            if self.on_nudge is not None:
                self.on_nudge(decision, result)
            return
        non_trivial = result.weather is not Weather.CLEAR or result.nudge_type is not None
        if non_trivial and self.on_silence is not None:
            self.on_silence(decision.reason, result.weather, result.signals)

    def _adjust_interval(self, weather: Weather) -> None:
        match weather:
            case Weather.CLEAR:
                self.consecutive_clear_count += 1
                if self.consecutive_clear_count >= CLEARS_BEFORE_BACKOFF:
                    self.current_interval = min(
                        self.current_interval * Interval.CLEAR_MULTIPLIER, Interval.MAX
                    )
                else:
                    self.current_interval = Interval.BASE
            case Weather.CLOUDY:
                self.consecutive_clear_count = 0
                self.current_interval = Interval.BASE
            case Weather.STORMY:
                self.consecutive_clear_count = 0
                self.current_interval = Interval.STORMY

    def _check_idle(self) -> bool:
        if self.idle_probe is None:
            return False
        idle_seconds = self.idle_probe()
        if idle_seconds < IDLE_PAUSE_SECONDS:
            return False
        logger.info("user idle for %.0fs, auto-pausing", idle_seconds)
        self._halt()
        self._diagnose(f"Paused: idle for {idle_seconds / 60:.0f} min")
        if self.on_auto_pause is not None:
            self.on_auto_pause()
        return True

    async def _sleep_for_interval(self) -> None:
        expected = self.current_interval
        before = self.clock.now()
        self.state = SchedulerState.SLEEPING
        await self._sleep(expected)
        self.state = SchedulerState.RUNNING if self._running else SchedulerState.IDLE
        elapsed = (self.clock.now() - before).total_seconds()
        if elapsed > expected * SLEEP_GAP_FACTOR:
            # 実時間が想定の 2 倍以上: ホストがスリープしていたとみなす
            logger.info("sleep gap detected (%.0fs > %.0fs)", elapsed, expected)
            self.reset_session()
            self._diagnose("Woke from system sleep, session reset")

    async def _interruptible_sleep(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        self._wake.clear()

    def _halt(self) -> None:
        self._running = False
        self.state = SchedulerState.IDLE
        if self._wake is not None:
            self._wake.set()
        if self.activity_monitor is not None:
            self.activity_monitor.stop()

    def _diagnose(self, message: str) -> None:
        logger.debug(message)
        if self.on_diagnostic is not None:
            self.on_diagnostic(message)
