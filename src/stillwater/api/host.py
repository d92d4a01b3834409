"""Host wiring: scheduler → sampler → engine → notification.

``NudgeHost`` owns one of each collaborator and keeps the small amount of
state the HTTP API and the monitoring page read back.
"""

from collections import deque
from datetime import datetime
from typing import Any

from stillwater.api.services.llm import create_analyzer
from stillwater.config import Settings
from stillwater.core.clock import ClockSource, SystemClock
from stillwater.core.cooldown_store import CooldownStore
from stillwater.core.engine import NudgeEngine
from stillwater.core.scheduler import AdaptiveScheduler
from stillwater.core.suppression import SuppressionGate
from stillwater.logger import get_logger
from stillwater.model.models import (
    AnalysisResult,
    BehavioralContext,
    DismissalType,
    NudgeDecision,
    NudgeType,
    SilenceDecision,
    Weather,
)
from stillwater.ui.notifications import NotificationService
from stillwater.watchers.active_window import ActivityMonitor, default_environment
from stillwater.watchers.idle import get_idle_seconds
from stillwater.watchers.pump import ScreenSampler

logger = get_logger("host")

MAX_LOG_LINES = 100
MAX_DIAGNOSTICS = 50


class NudgeHost:
    """Glue between the decision core and the outside world.

    Args:
        engine: クールダウン/クォータを持つ判定エンジン
        gate: 環境による抑制ゲート
        notifier: 承認されたナッジの通知先
        sampler: 解析器付きサンプラ. ``None`` なら監視ループは使えない
        monitor: アプリ切り替えの購読（スケジューラが開始・停止する）

    """

    def __init__(  # noqa: PLR0913
        self,
        engine: NudgeEngine,
        gate: SuppressionGate,
        notifier: NotificationService,
        sampler: ScreenSampler | None = None,
        *,
        monitor: ActivityMonitor | None = None,
        clock: ClockSource | None = None,
        scheduler: AdaptiveScheduler | None = None,
    ) -> None:
        self.engine = engine
        self.gate = gate
        self.notifier = notifier
        self.clock = clock or engine.clock
        self.sampler = sampler

        self.last_result: AnalysisResult | None = None
        self.last_decision: NudgeDecision | None = None
        self.last_silence: SilenceDecision | None = None
        self.pending_nudge: NudgeDecision | None = None
        self.pending_result: AnalysisResult | None = None
        self.last_nudge: tuple[datetime, NudgeType] | None = None
        self.diagnostics: deque[str] = deque(maxlen=MAX_DIAGNOSTICS)
        self.logs: deque[str] = deque(maxlen=MAX_LOG_LINES)

        if scheduler is None and sampler is not None:
            if sampler.last_nudge is None:
                sampler.last_nudge = lambda: self.last_nudge
            if sampler.patterns is None:
                sampler.patterns = engine.false_positive_patterns
            scheduler = AdaptiveScheduler(
                sampler,
                decide=self.decide,
                idle_probe=get_idle_seconds,
                clock=self.clock,
                activity_monitor=monitor,
            )
        self.scheduler = scheduler
        if self.scheduler is not None:
            self.scheduler.decide = self.decide
            self.scheduler.on_sample = self._on_sample
            self.scheduler.on_silence = self._on_silence
            self.scheduler.on_nudge = self._on_nudge
            self.scheduler.on_diagnostic = self._on_diagnostic
            self.scheduler.on_auto_pause = self._on_auto_pause

    # --- ロギング ---

    def log_message(self, message: str) -> None:
        """ロガーに出力し、監視ページ用のキューにも追加する."""
        logger.info(message)
        stamp = self.clock.now().strftime("%H:%M:%S")
        self.logs.append(f"{stamp} {message}")

    # --- 判定と通知 ---

    def decide(self, result: AnalysisResult) -> NudgeDecision:
        """ゲート評価 → 行動コンテキスト → エンジン判定."""
        suppression = self.gate.evaluate()
        behavioral = BehavioralContext.from_analysis(result)
        decision = self.engine.decide(result, behavioral, suppression)
        self.last_decision = decision
        self.log_message(
            f"Decision: {decision.reason} (show={decision.should_show}, "
            f"kind={decision.kind.value})"
        )
        return decision

    def present(
        self, decision: NudgeDecision, result: AnalysisResult | None = None
    ) -> bool:
        """承認されたナッジを通知し、表示済みとしてエンジンに記録する."""
        if not decision.should_show or decision.nudge_type is None:
            return False
        delivered = self.notifier.notify_nudge(decision)
        self.engine.record_shown(decision.nudge_type)
        self.pending_nudge = decision
        self.pending_result = result
        self.last_nudge = (self.clock.now(), decision.nudge_type)
        self.log_message(f"Nudge shown: {decision.nudge_type.value}")
        return delivered

    def dismiss(self, dismissal: DismissalType) -> None:
        """表示中のナッジが閉じられた.

        ``auto_dismissed`` は表示期限切れなので、エンジンにも
        スケジューラにも何も記録しない。
        """
        result = self.pending_result
        self.pending_nudge = None
        self.pending_result = None
        if dismissal is DismissalType.AUTO_DISMISSED:
            self.log_message("Nudge auto-dismissed")
            return

        is_later = dismissal is DismissalType.LATER
        # 「あとで」は誤検知ではないので指紋を記録しない
        self.engine.record_dismissal(
            is_later=is_later, analysis=None if is_later else result
        )
        if self.scheduler is not None:
            self.scheduler.record_dismissal()
        self.log_message(f"Nudge dismissed: {dismissal.value}")

    def complete_practice(self) -> None:
        self.pending_nudge = None
        self.pending_result = None
        self.engine.record_completed()
        if self.scheduler is not None:
            self.scheduler.record_practice_completed()
        self.log_message("Practice completed")

    # --- 画面ロック ---

    def screen_locked(self) -> None:
        self.gate.on_screen_locked()
        self.log_message("Screen locked")

    def screen_unlocked(self) -> None:
        self.gate.on_screen_unlocked()
        self.log_message("Screen unlocked")

    # --- スケジューラのコールバック ---

    def _on_sample(self, weather: Weather, result: AnalysisResult) -> None:
        self.last_result = result
        self.log_message(
            f"Sample: {weather.value} ({result.confidence:.0%}) "
            f"signals={', '.join(result.signals) or '-'}"
        )

    def _on_silence(
        self, reason: str, weather: Weather, signals: tuple[str, ...]
    ) -> None:
        result = self.last_result
        self.last_silence = SilenceDecision(
            timestamp=self.clock.now(),
            reason=reason,
            detected_weather=weather,
            signals=signals,
            thinking_text=result.thinking_text if result else None,
            effort_level=result.effort_level if result else None,
        )
        self.log_message(f"Stayed quiet: {self.last_silence.reason_summary}")

    def _on_nudge(self, decision: NudgeDecision, result: AnalysisResult) -> None:
        self.present(decision, result)

    def _on_diagnostic(self, message: str) -> None:
        self.diagnostics.append(message)

    def _on_auto_pause(self) -> None:
        self.log_message("Monitoring auto-paused (user idle)")

    # --- 読み取り ---

    def status(self) -> dict[str, Any]:
        scheduler = self.scheduler
        return {
            "monitoring": bool(scheduler and scheduler.running),
            "analyzer_configured": scheduler is not None,
            "scheduler_state": scheduler.state.value if scheduler else None,
            "current_interval": scheduler.current_interval if scheduler else None,
            "effort_level": scheduler.effort_level().value if scheduler else None,
            "screen_locked": self.gate.is_screen_locked,
            "weather": self.last_result.weather.value if self.last_result else None,
            "pending_nudge": (
                self.pending_nudge.to_dict() if self.pending_nudge else None
            ),
            "cooldown": self.engine.cooldown_snapshot(),
        }

    def monitoring_data(self) -> dict[str, Any]:
        return {
            "status": self.status(),
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_decision": (
                self.last_decision.to_dict() if self.last_decision else None
            ),
            "last_silence": (
                self.last_silence.to_dict() if self.last_silence else None
            ),
            "false_positive_patterns": self.engine.false_positive_patterns(),
            "notifications": self.notifier.get_notification_history(),
            "diagnostics": list(self.diagnostics),
            "logs": list(self.logs),
        }


def build_host(settings: Settings | None = None) -> NudgeHost:
    """設定から本番用の NudgeHost を組み立てる.

    解析器の設定（LLM_URL / LLM_MODEL）が無い場合も API 自体は起動でき、
    監視系のエンドポイントだけが使えない状態になる。
    """
    settings = settings or Settings.from_env()
    clock = SystemClock()
    store = CooldownStore(settings.state_path) if settings.state_path else None
    engine = NudgeEngine(clock=clock, store=store)
    gate = SuppressionGate(
        default_environment(), clock, active_hours_start=settings.active_hours_start
    )

    sampler: ScreenSampler | None = None
    monitor: ActivityMonitor | None = None
    try:
        analyzer = create_analyzer(
            settings.llm_url, settings.llm_model, settings.llm_timeout
        )
    except RuntimeError as e:
        logger.warning("analyzer not configured: %s", e)
    else:
        monitor = ActivityMonitor(clock=clock)
        sampler = ScreenSampler(analyzer, monitor=monitor, clock=clock)

    return NudgeHost(
        engine, gate, NotificationService(), sampler, monitor=monitor, clock=clock
    )
