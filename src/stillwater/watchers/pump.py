import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from stillwater.api.services.llm import AnalyzerContext
from stillwater.core.clock import ClockSource, SystemClock
from stillwater.core.scheduler import SampleContext
from stillwater.logger import get_logger
from stillwater.model.models import (
    AnalysisResult,
    EffortLevel,
    NudgeType,
    SystemContext,
)
from stillwater.watchers.active_window import ActivityMonitor, build_system_context
from stillwater.watchers.screen_capture import ScreenCapture

logger = get_logger("pump")


class Analyzer(Protocol):
    def analyze(
        self, image: bytes, context: AnalyzerContext, effort: EffortLevel
    ) -> AnalysisResult: ...


class ScreenSampler:
    """1 ティック分の「キャプチャ → 解析」を行う.

    スケジューラの ``sampler`` としてそのまま渡せる（``await sampler(ctx)``）。
    キャプチャと解析はブロッキングなのでワーカースレッドで実行する。
    """

    def __init__(  # noqa: PLR0913
        self,
        analyzer: Analyzer,
        capture: ScreenCapture | None = None,
        monitor: ActivityMonitor | None = None,
        *,
        clock: ClockSource | None = None,
        context_probe: Callable[
            [ActivityMonitor | None], SystemContext
        ] = build_system_context,
        patterns: Callable[[], list[str]] | None = None,
        last_nudge: Callable[[], tuple[datetime, NudgeType] | None] | None = None,
        preferred_practices: tuple[str, ...] = (),
    ) -> None:
        self.analyzer = analyzer
        self._capture = capture
        self.monitor = monitor
        self.clock = clock or SystemClock()
        self.context_probe = context_probe
        self.patterns = patterns
        self.last_nudge = last_nudge
        self.preferred_practices = preferred_practices

    @property
    def capture(self) -> ScreenCapture:
        # mss の初期化はディスプレイが必要なので初回使用時まで遅らせる
        if self._capture is None:
            self._capture = ScreenCapture()
        return self._capture

    def build_context(
        self, sample: SampleContext, system: SystemContext | None
    ) -> AnalyzerContext:
        now = self.clock.now()
        minutes_ago: int | None = None
        nudge_type: NudgeType | None = None
        last = self.last_nudge() if self.last_nudge else None
        if last is not None:
            at, nudge_type = last
            minutes_ago = int((now - at).total_seconds() // 60)
        return AnalyzerContext(
            time=now.strftime("%H:%M"),
            day_of_week=now.strftime("%A"),
            recent_weathers=tuple(r.weather for r in sample.recent_results),
            last_nudge_minutes_ago=minutes_ago,
            last_nudge_type=nudge_type,
            dismissal_count=sample.dismissal_count,
            preferred_practices=self.preferred_practices,
            learned_patterns=tuple(self.patterns() if self.patterns else ()),
            system_context=system,
        )

    async def __call__(self, sample: SampleContext) -> AnalysisResult:
        image = await asyncio.to_thread(self.capture.capture_jpeg)
        system = self.context_probe(self.monitor)
        metrics = self.monitor.metrics() if self.monitor is not None else None
        context = self.build_context(sample, system)

        logger.info(
            "sampling (effort=%s, %d bytes)", sample.effort_level.value, len(image)
        )
        result = await asyncio.to_thread(
            self.analyzer.analyze, image, context, sample.effort_level
        )
        return replace(
            result,
            behavior_metrics=metrics,
            system_context=system,
            effort_level=sample.effort_level,
        )
