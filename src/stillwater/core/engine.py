"""Nudge decision engine.

Layers cooldown, quota, suppression and override rules on top of the
analyzer's noisy verdict. Rules are evaluated in a fixed order and the first
match wins:

1. video call / screen sharing (and any environment suppression)
2. behavioral override when the analyzer proposed no nudge
3. behavioral contradiction (stormy screen, calm behavior)
4. hard 5 minute floor
5. dismissal cooldown (15 min, or 2 h after three dismissals)
6. daily total limit
7. daily practice limit
8. 10 minute interval between any nudges
9. 30 minute interval between practice nudges
10. 45 minute cooldown after a completed practice
11. learned false positive contexts
12. approve

``decide`` never records anything about the nudge itself; the caller reports
back with :meth:`NudgeEngine.record_shown`, :meth:`NudgeEngine.record_dismissal`
and :meth:`NudgeEngine.record_completed` once it has acted.
"""

import threading
from datetime import datetime, timedelta
from typing import Any

from stillwater.core.clock import ClockSource, SystemClock
from stillwater.core.cooldown_store import CooldownStore
from stillwater.core.false_positive import FalsePositiveTracker, build_context
from stillwater.core.severity import severity
from stillwater.logger import get_logger
from stillwater.model.models import (
    Allowed,
    AnalysisResult,
    BehavioralContext,
    BehaviorMetrics,
    CooldownState,
    DecisionKind,
    DelayFor,
    NeverNow,
    NudgeDecision,
    NudgeType,
    SuppressionResult,
    Weather,
)

logger = get_logger("engine")


class Cooldown:
    """クールダウンと日次上限の定数."""

    HARD_MIN_INTERVAL = timedelta(minutes=5)
    POST_DISMISSAL = timedelta(minutes=15)
    CONSECUTIVE_DISMISSAL = timedelta(hours=2)
    MIN_ANY_NUDGE_INTERVAL = timedelta(minutes=10)
    MIN_PRACTICE_INTERVAL = timedelta(minutes=30)
    POST_PRACTICE = timedelta(minutes=45)
    CONSECUTIVE_DISMISSAL_LIMIT = 3
    MAX_DAILY_TOTAL_NUDGES = 12
    MAX_DAILY_PRACTICE_NUDGES = 6


class Severity:
    """深刻度による上書き判定の閾値."""

    EXTREME = 0.85
    MODERATE = 0.70
    MODERATE_CONFIDENCE = 0.60
    ENCOURAGEMENT = 0.40
    CONTRADICTION = 0.15
    FALSE_POSITIVE_CEILING = 0.5


FALSE_POSITIVE_MIN_DISMISSALS = 3
DEFAULT_OVERRIDE_MESSAGE = (
    "Your activity patterns suggest elevated stress. A quick practice might help."
)
DEFAULT_OVERRIDE_PRACTICE_ID = "box-breathing"
DEFAULT_ENCOURAGEMENT_MESSAGE = (
    "You've been juggling a lot. A slow breath before the next thing can help."
)


class NudgeEngine:
    """Owns :class:`CooldownState` and turns one analysis into one decision.

    All public methods take the same lock, so at most one mutation of the
    cooldown state is in flight at a time.
    """

    def __init__(
        self,
        clock: ClockSource | None = None,
        tracker: FalsePositiveTracker | None = None,
        store: CooldownStore | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.tracker = tracker or FalsePositiveTracker(self.clock)
        self.store = store
        self._lock = threading.Lock()

        self._state = CooldownState(daily_reset_date=self.clock.now().date())
        if store is not None:
            loaded = store.load()
            if loaded is not None:
                self._state = loaded
                logger.info("Loaded cooldown state from %s", store.path)

    # ------------------------------------------------------------------
    # 判定

    @staticmethod
    def evaluate_suppression(result: SuppressionResult) -> NudgeDecision | None:
        """SuppressionGate の結果を拒否判定に変換する. 許可なら ``None``."""
        match result:
            case Allowed():
                return None
            case NeverNow(reason=reason):
                return _denied(f"suppressed_{reason}", DecisionKind.SUPPRESSED)
            case DelayFor(reason=reason):
                return _denied(f"delayed_{reason}", DecisionKind.SUPPRESSED)
        msg = f"unknown suppression result: {result!r}"
        raise TypeError(msg)

    def decide(
        self,
        analysis: AnalysisResult,
        behavioral: BehavioralContext | None = None,
        suppression: SuppressionResult | None = None,
    ) -> NudgeDecision:
        """解析結果 1 件に対してナッジを出すかどうかを決める.

        Args:
            analysis: 解析器の結果
            behavioral: 行動コンテキスト（無ければ深刻度 0.5 とみなす）
            suppression: SuppressionGate の評価結果

        Returns:
            NudgeDecision: 必ず返る. 拒否理由は ``reason`` に入る

        """
        with self._lock:
            now = self.clock.now()
            changed = self._reset_daily_counters_if_needed(now)
            decision, ladder_changed = self._decide_locked(
                analysis, behavioral, suppression, now
            )
            if changed or ladder_changed:
                self._persist()
        logger.debug(
            "decision weather=%s show=%s reason=%s",
            analysis.weather.value,
            decision.should_show,
            decision.reason,
        )
        return decision

    def _decide_locked(
        self,
        analysis: AnalysisResult,
        behavioral: BehavioralContext | None,
        suppression: SuppressionResult | None,
        now: datetime,
    ) -> tuple[NudgeDecision, bool]:
        system = (
            behavioral.system_context
            if behavioral is not None and behavioral.system_context is not None
            else analysis.system_context
        )
        if system is not None:
            if system.is_on_video_call:
                return _denied(
                    "smart_suppression_video_call", DecisionKind.SUPPRESSED
                ), False
            if system.is_screen_sharing:
                return _denied(
                    "smart_suppression_screen_sharing", DecisionKind.SUPPRESSED
                ), False

        if suppression is not None:
            blocked = self.evaluate_suppression(suppression)
            if blocked is not None:
                return blocked, False

        score = severity(behavioral)
        metrics = behavioral.metrics if behavioral is not None else None

        if analysis.nudge_type is None:
            return self._decide_behavioral(analysis, score, metrics, now)

        if score < Severity.CONTRADICTION and analysis.weather is Weather.STORMY:
            return _denied("behavioral_contradiction"), False

        reason, changed = self._cooldown_reason(analysis.nudge_type, now)
        if reason is None:
            reason = self._false_positive_reason(analysis, metrics, score)
        if reason is not None:
            return _denied(reason), changed

        return NudgeDecision(
            should_show=True,
            reason="approved",
            kind=DecisionKind.APPROVED,
            nudge_type=analysis.nudge_type,
            message=analysis.message,
            suggested_practice_id=analysis.suggested_practice_id,
            thinking_text=analysis.thinking_text,
            effort_level=analysis.effort_level,
        ), changed

    def _decide_behavioral(
        self,
        analysis: AnalysisResult,
        score: float,
        metrics: BehaviorMetrics | None,
        now: datetime,
    ) -> tuple[NudgeDecision, bool]:
        # 解析器は「ナッジ不要」. 行動面の深刻度で上書きするか判断する
        if score >= Severity.EXTREME:
            override = "behavioral_override_extreme"
        elif (
            score >= Severity.MODERATE
            and analysis.confidence >= Severity.MODERATE_CONFIDENCE
        ):
            override = "behavioral_override_moderate"
        elif score >= Severity.ENCOURAGEMENT:
            reason, changed = self._cooldown_reason(
                NudgeType.ENCOURAGEMENT, now, reduced=True
            )
            if reason is not None:
                return _denied(reason), changed
            return NudgeDecision(
                should_show=True,
                reason="behavioral_encouragement",
                kind=DecisionKind.OVERRIDDEN,
                nudge_type=NudgeType.ENCOURAGEMENT,
                message=analysis.message or DEFAULT_ENCOURAGEMENT_MESSAGE,
                thinking_text=analysis.thinking_text,
                effort_level=analysis.effort_level,
            ), changed
        else:
            return _denied("ai_no_nudge"), False

        reason, changed = self._cooldown_reason(NudgeType.PRACTICE, now)
        if reason is None:
            reason = self._false_positive_reason(analysis, metrics, score)
        if reason is not None:
            return _denied(reason), changed
        return NudgeDecision(
            should_show=True,
            reason=override,
            kind=DecisionKind.OVERRIDDEN,
            nudge_type=NudgeType.PRACTICE,
            message=analysis.message or DEFAULT_OVERRIDE_MESSAGE,
            suggested_practice_id=(
                analysis.suggested_practice_id or DEFAULT_OVERRIDE_PRACTICE_ID
            ),
            thinking_text=analysis.thinking_text,
            effort_level=analysis.effort_level,
        ), changed

    def _cooldown_reason(
        self, nudge_type: NudgeType, now: datetime, *, reduced: bool = False
    ) -> tuple[str | None, bool]:
        """ルール 4〜10. ``reduced`` は励まし用の簡易ラダー（4, 6, 8, 10）.

        Returns:
            (拒否理由 or None, 状態を変更したか)

        """
        s = self._state
        is_practice = nudge_type is NudgeType.PRACTICE

        if _within(now, s.last_nudge_time, Cooldown.HARD_MIN_INTERVAL):
            return "hard_min_interval", False

        changed = False
        if not reduced and s.last_dismissal_time is not None:
            limit_hit = s.consecutive_dismissals >= Cooldown.CONSECUTIVE_DISMISSAL_LIMIT
            cooldown = (
                Cooldown.CONSECUTIVE_DISMISSAL if limit_hit else Cooldown.POST_DISMISSAL
            )
            if _within(now, s.last_dismissal_time, cooldown):
                return (
                    "consecutive_dismissal_cooldown"
                    if limit_hit
                    else "post_dismissal_cooldown"
                ), False
            if limit_hit:
                # 長いクールダウンが明けたら 3 回分の猶予を戻す
                s.consecutive_dismissals = 0
                changed = True

        if s.daily_nudge_count >= Cooldown.MAX_DAILY_TOTAL_NUDGES:
            return "daily_total_limit", changed
        if (
            not reduced
            and is_practice
            and s.daily_practice_nudge_count >= Cooldown.MAX_DAILY_PRACTICE_NUDGES
        ):
            return "daily_practice_limit", changed
        if _within(now, s.last_nudge_time, Cooldown.MIN_ANY_NUDGE_INTERVAL):
            return "min_nudge_interval", changed
        if (
            not reduced
            and is_practice
            and _within(now, s.last_practice_nudge_time, Cooldown.MIN_PRACTICE_INTERVAL)
        ):
            return "min_practice_interval", changed
        if _within(now, s.last_practice_completed_time, Cooldown.POST_PRACTICE):
            return "post_practice_cooldown", changed
        return None, changed

    def _false_positive_reason(
        self,
        analysis: AnalysisResult,
        metrics: BehaviorMetrics | None,
        score: float,
    ) -> str | None:
        context = build_context(analysis, metrics)
        if (
            context
            and score < Severity.FALSE_POSITIVE_CEILING
            and self.tracker.matching_dismissals(context)
            >= FALSE_POSITIVE_MIN_DISMISSALS
        ):
            return "false_positive_suppressed"
        return None

    # ------------------------------------------------------------------
    # イベント記録

    def record_shown(self, nudge_type: NudgeType) -> None:
        """ナッジを実際に表示したときに呼ぶ. 連続却下カウンタは変えない."""
        with self._lock:
            now = self.clock.now()
            self._reset_daily_counters_if_needed(now)
            s = self._state
            s.last_nudge_time = now
            s.daily_nudge_count += 1
            if nudge_type is NudgeType.PRACTICE:
                s.last_practice_nudge_time = now
                s.daily_practice_nudge_count += 1
            self._persist()
        logger.info("nudge shown: %s", nudge_type.value)

    def record_dismissal(
        self,
        *,
        is_later: bool = False,
        analysis: AnalysisResult | None = None,
        metrics: BehaviorMetrics | None = None,
    ) -> None:
        """却下を記録する.

        Args:
            is_later: 「あとで」は回避ではなく関与とみなし、カウンタを 0 に戻す
            analysis: 却下されたナッジの元になった解析結果（誤検知学習に使う）
            metrics: その時点の行動メトリクス. 省略時は ``analysis`` のもの

        """
        with self._lock:
            now = self.clock.now()
            s = self._state
            s.last_dismissal_time = now
            if is_later:
                s.consecutive_dismissals = 0
            else:
                s.consecutive_dismissals += 1
            if analysis is not None:
                context = build_context(analysis, metrics or analysis.behavior_metrics)
                self.tracker.record(context, analysis.confidence)
            consecutive = s.consecutive_dismissals
            self._persist()
        logger.info(
            "nudge dismissed (later=%s, consecutive=%d)", is_later, consecutive
        )

    def record_completed(self) -> None:
        """プラクティス完了. 連続却下カウンタをリセットする."""
        with self._lock:
            self._state.last_practice_completed_time = self.clock.now()
            self._state.consecutive_dismissals = 0
            self._persist()
        logger.info("practice completed")

    # ------------------------------------------------------------------
    # 読み取り専用

    @property
    def consecutive_dismissals(self) -> int:
        with self._lock:
            return self._state.consecutive_dismissals

    @property
    def today_nudge_count(self) -> int:
        with self._lock:
            self._reset_daily_counters_if_needed(self.clock.now())
            return self._state.daily_nudge_count

    @property
    def state(self) -> CooldownState:
        """A copy of the current cooldown state."""
        with self._lock:
            return CooldownState.from_dict(self._state.to_dict())

    def false_positive_patterns(self) -> list[str]:
        with self._lock:
            return self.tracker.patterns()

    def cooldown_snapshot(self) -> dict[str, Any]:
        """UI 表示用のクールダウン状況."""
        with self._lock:
            now = self.clock.now()
            self._reset_daily_counters_if_needed(now)
            s = self._state
            reason: str | None = None
            if _within(now, s.last_nudge_time, Cooldown.HARD_MIN_INTERVAL):
                reason = "hard_min_interval"
            elif _within(now, s.last_nudge_time, Cooldown.MIN_ANY_NUDGE_INTERVAL):
                reason = "min_nudge_interval"
            elif _within(now, s.last_practice_completed_time, Cooldown.POST_PRACTICE):
                reason = "post_practice_cooldown"
            elif s.last_dismissal_time is not None:
                limit_hit = (
                    s.consecutive_dismissals >= Cooldown.CONSECUTIVE_DISMISSAL_LIMIT
                )
                cooldown = (
                    Cooldown.CONSECUTIVE_DISMISSAL
                    if limit_hit
                    else Cooldown.POST_DISMISSAL
                )
                if _within(now, s.last_dismissal_time, cooldown):
                    reason = (
                        "consecutive_dismissal_cooldown"
                        if limit_hit
                        else "post_dismissal_cooldown"
                    )
            return {
                "consecutive_dismissals": s.consecutive_dismissals,
                "daily_nudge_count": s.daily_nudge_count,
                "daily_practice_nudge_count": s.daily_practice_nudge_count,
                "is_in_cooldown": reason is not None,
                "cooldown_reason": reason,
            }

    # ------------------------------------------------------------------

    def _reset_daily_counters_if_needed(self, now: datetime) -> bool:
        today = now.date()
        s = self._state
        if s.daily_reset_date is None or today > s.daily_reset_date:
            s.daily_reset_date = today
            s.daily_nudge_count = 0
            s.daily_practice_nudge_count = 0
            return True
        return False

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self._state)
        except OSError as e:
            logger.warning("Failed to save cooldown state: %s", e)


def _within(now: datetime, since: datetime | None, window: timedelta) -> bool:
    return since is not None and now - since < window


def _denied(reason: str, kind: DecisionKind = DecisionKind.DENIED) -> NudgeDecision:
    return NudgeDecision(should_show=False, reason=reason, kind=kind)
