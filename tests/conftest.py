import os
import tempfile
from datetime import datetime

# パッケージロガーのファイル出力先をテスト用の一時ディレクトリにする
os.environ.setdefault("STILLWATER_LOG_DIR", tempfile.mkdtemp(prefix="stillwater-log-"))

import pytest

from stillwater.core.clock import FixedClock
from stillwater.core.engine import NudgeEngine
from stillwater.model.models import (
    AnalysisResult,
    BehavioralContext,
    BehaviorMetrics,
    NudgeType,
    SystemContext,
    Weather,
)

# 月曜 10:00（アクティブ時間開始直後の 30 分は避ける）
START = datetime(2026, 3, 2, 10, 0, 0)


def make_analysis(
    weather: Weather = Weather.STORMY,
    nudge_type: NudgeType | None = NudgeType.PRACTICE,
    confidence: float = 0.8,
    signals: tuple[str, ...] = (),
    **kwargs,
) -> AnalysisResult:
    return AnalysisResult(
        weather=weather,
        confidence=confidence,
        signals=signals,
        nudge_type=nudge_type,
        **kwargs,
    )


def make_behavioral(
    switches: float = 1.0,
    deviation: float = 0.0,
    session: float = 600.0,
    focus: dict[str, float] | None = None,
    system: SystemContext | None = None,
) -> BehavioralContext:
    return BehavioralContext(
        metrics=BehaviorMetrics(
            context_switches_per_minute=switches,
            session_duration=session,
            application_focus={"code.exe": 0.9} if focus is None else focus,
        ),
        baseline_deviation=deviation,
        system_context=system,
    )


@pytest.fixture
def clock() -> FixedClock:
    """テスト用の固定クロック"""
    return FixedClock(START)


@pytest.fixture
def engine(clock: FixedClock) -> NudgeEngine:
    """インメモリ状態の判定エンジン"""
    return NudgeEngine(clock=clock)


@pytest.fixture
def calm() -> BehavioralContext:
    """落ち着いた行動（深刻度 0.0）"""
    return make_behavioral()


@pytest.fixture
def extreme() -> BehavioralContext:
    """極端な行動（深刻度 0.9）"""
    return make_behavioral(switches=9.0, deviation=3.0, session=4 * 3600.0)
