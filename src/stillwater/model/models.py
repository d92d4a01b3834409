__all__ = [
    "Allowed",
    "AnalysisResult",
    "BehaviorMetrics",
    "BehavioralContext",
    "CooldownState",
    "DecisionKind",
    "DelayFor",
    "DismissalType",
    "EffortLevel",
    "FalsePositiveEntry",
    "NeverNow",
    "NudgeDecision",
    "NudgeType",
    "SilenceDecision",
    "SuppressionResult",
    "SystemContext",
    "Weather",
]


import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

PRACTICE_ALIASES = frozenset(
    {
        "breathing",
        "grounding",
        "mindfulness",
        "body_scan",
        "meditation",
        "relaxation",
        "cognitive",
        "visualization",
        "wellbeing",
        "wellness",
        "stretch",
        "movement",
        "suggestion",
        "break",
        "rest",
        "pause",
    }
)


class Weather(Enum):
    """推定されたストレス状態（天気）."""

    CLEAR = "clear"
    CLOUDY = "cloudy"
    STORMY = "stormy"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class NudgeType(Enum):
    """ユーザーに提示するナッジの種類."""

    PRACTICE = "practice"
    ENCOURAGEMENT = "encouragement"
    ACKNOWLEDGMENT = "acknowledgment"

    @classmethod
    def from_raw(cls, raw: str | None) -> "NudgeType | None":
        """Normalize analyzer output that uses non-standard nudge type strings.

        Vision models sometimes answer with a concrete practice kind
        ("breathing", "stretch", ...) instead of ``practice``.
        """
        if not raw:
            return None
        value = raw.strip().lower()
        try:
            return cls(value)
        except ValueError:
            pass
        if value in PRACTICE_ALIASES:
            return cls.PRACTICE
        return None


class EffortLevel(Enum):
    """解析器に要求する推論コストのレベル."""

    LOW = "low"
    HIGH = "high"
    MAX = "max"

    @property
    def budget_tokens(self) -> int:
        return {"low": 1024, "high": 4096, "max": 10240}[self.value]

    @property
    def max_response_tokens(self) -> int:
        return {"low": 1024, "high": 2048, "max": 4096}[self.value]

    @property
    def display_name(self) -> str:
        return {
            "low": "Quick check",
            "high": "Deep reasoning",
            "max": "Full analysis",
        }[self.value]


class DismissalType(Enum):
    """ナッジが閉じられた理由."""

    IM_FINE = "im_fine"
    LATER = "later"
    AUTO_DISMISSED = "auto_dismissed"


class DecisionKind(Enum):
    """Closed classification of a decision, so callers never match on reasons."""

    APPROVED = "approved"
    OVERRIDDEN = "overridden"
    DENIED = "denied"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class BehaviorMetrics:
    """操作パターンから得られる行動メトリクス.

    ``session_duration`` は秒、``application_focus`` はアプリ名→割合（合計 ≤ 1）。
    """

    context_switches_per_minute: float
    session_duration: float
    application_focus: dict[str, float] = field(default_factory=dict)
    notification_accumulation: int = 0
    recent_app_sequence: tuple[str, ...] = ()

    def top_app(self) -> str | None:
        if not self.application_focus:
            return None
        return max(self.application_focus.items(), key=lambda kv: kv[1])[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_switches_per_minute": self.context_switches_per_minute,
            "session_duration": self.session_duration,
            "application_focus": dict(self.application_focus),
            "notification_accumulation": self.notification_accumulation,
            "recent_app_sequence": list(self.recent_app_sequence),
        }


@dataclass(frozen=True)
class SystemContext:
    """スクリーンショット取得時点のシステム状態."""

    active_app: str
    active_window_title: str | None = None
    open_window_count: int = 0
    recent_app_switches: tuple[str, ...] = ()
    pending_notification_count: int = 0
    is_on_video_call: bool = False
    is_screen_sharing: bool = False
    system_uptime: float = 0.0
    idle_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_app": self.active_app,
            "active_window_title": self.active_window_title,
            "open_window_count": self.open_window_count,
            "recent_app_switches": list(self.recent_app_switches),
            "pending_notification_count": self.pending_notification_count,
            "is_on_video_call": self.is_on_video_call,
            "is_screen_sharing": self.is_screen_sharing,
            "system_uptime": self.system_uptime,
            "idle_time": self.idle_time,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """解析器が 1 ティックごとに返す結果. エンジンは読むだけで変更しない."""

    weather: Weather
    confidence: float
    signals: tuple[str, ...] = ()
    nudge_type: NudgeType | None = None
    message: str | None = None
    suggested_practice_id: str | None = None
    behavior_metrics: BehaviorMetrics | None = None
    baseline_deviation: float | None = None
    system_context: SystemContext | None = None
    thinking_text: str | None = None
    effort_level: EffortLevel | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "weather": self.weather.value,
            "confidence": self.confidence,
            "signals": list(self.signals),
            "nudge_type": self.nudge_type.value if self.nudge_type else None,
            "message": self.message,
            "suggested_practice_id": self.suggested_practice_id,
            "behavior_metrics": (
                self.behavior_metrics.to_dict() if self.behavior_metrics else None
            ),
            "baseline_deviation": self.baseline_deviation,
            "system_context": (
                self.system_context.to_dict() if self.system_context else None
            ),
            "effort_level": self.effort_level.value if self.effort_level else None,
        }


@dataclass(frozen=True)
class BehavioralContext:
    """ティックごとに作り直す行動コンテキスト（永続化しない）."""

    metrics: BehaviorMetrics
    baseline_deviation: float = 0.0
    system_context: SystemContext | None = None

    @classmethod
    def from_analysis(cls, analysis: AnalysisResult) -> "BehavioralContext | None":
        if analysis.behavior_metrics is None:
            return None
        return cls(
            metrics=analysis.behavior_metrics,
            baseline_deviation=analysis.baseline_deviation or 0.0,
            system_context=analysis.system_context,
        )


@dataclass
class CooldownState:
    """DecisionEngine だけが書き換えるクールダウン/クォータ状態."""

    last_nudge_time: datetime | None = None
    last_practice_nudge_time: datetime | None = None
    last_practice_completed_time: datetime | None = None
    last_dismissal_time: datetime | None = None
    consecutive_dismissals: int = 0
    daily_nudge_count: int = 0
    daily_practice_nudge_count: int = 0
    daily_reset_date: date | None = None

    def to_dict(self) -> dict[str, Any]:
        def _ts(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "last_nudge_time": _ts(self.last_nudge_time),
            "last_practice_nudge_time": _ts(self.last_practice_nudge_time),
            "last_practice_completed_time": _ts(self.last_practice_completed_time),
            "last_dismissal_time": _ts(self.last_dismissal_time),
            "consecutive_dismissals": self.consecutive_dismissals,
            "daily_nudge_count": self.daily_nudge_count,
            "daily_practice_nudge_count": self.daily_practice_nudge_count,
            "daily_reset_date": (
                self.daily_reset_date.isoformat() if self.daily_reset_date else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CooldownState":
        def _ts(key: str) -> datetime | None:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        reset = data.get("daily_reset_date")
        state = cls(
            last_nudge_time=_ts("last_nudge_time"),
            last_practice_nudge_time=_ts("last_practice_nudge_time"),
            last_practice_completed_time=_ts("last_practice_completed_time"),
            last_dismissal_time=_ts("last_dismissal_time"),
            consecutive_dismissals=int(data.get("consecutive_dismissals", 0)),
            daily_nudge_count=int(data.get("daily_nudge_count", 0)),
            daily_practice_nudge_count=int(data.get("daily_practice_nudge_count", 0)),
            daily_reset_date=date.fromisoformat(reset) if reset else None,
        )
        if not (
            state.daily_nudge_count >= state.daily_practice_nudge_count >= 0
            and state.consecutive_dismissals >= 0
        ):
            msg = f"inconsistent cooldown counters: {data!r}"
            raise ValueError(msg)
        return state


@dataclass(frozen=True)
class Allowed:
    """抑制なし."""


@dataclass(frozen=True)
class NeverNow:
    """今は絶対に通知しない."""

    reason: str


@dataclass(frozen=True)
class DelayFor:
    """一定時間後まで通知を見送る（ホスト UI 向けの参考情報）."""

    seconds: int
    reason: str


SuppressionResult = Allowed | NeverNow | DelayFor


@dataclass(frozen=True)
class NudgeDecision:
    """DecisionEngine の唯一の出力. ``reason`` は診断用コード."""

    should_show: bool
    reason: str
    kind: DecisionKind
    nudge_type: NudgeType | None = None
    message: str | None = None
    suggested_practice_id: str | None = None
    thinking_text: str | None = None
    effort_level: EffortLevel | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_show": self.should_show,
            "reason": self.reason,
            "kind": self.kind.value,
            "nudge_type": self.nudge_type.value if self.nudge_type else None,
            "message": self.message,
            "suggested_practice_id": self.suggested_practice_id,
            "effort_level": self.effort_level.value if self.effort_level else None,
        }


@dataclass(frozen=True)
class FalsePositiveEntry:
    """却下されたナッジのコンテキスト記録."""

    context: str
    confidence: float
    timestamp: datetime


_REASON_SUMMARIES = {
    "ai_no_nudge": "Everything looks fine, no need to interrupt",
    "behavioral_contradiction": "Behavior doesn't match, staying quiet",
    "hard_min_interval": "Too soon since last check",
    "min_nudge_interval": "Cooldown active between nudges",
    "min_practice_interval": "Cooldown active between practices",
    "post_practice_cooldown": "Resting after recent practice",
    "post_dismissal_cooldown": "Giving you space after a dismissal",
    "consecutive_dismissal_cooldown": "Taking a longer break after several dismissals",
    "daily_total_limit": "Daily nudge limit reached",
    "daily_practice_limit": "Daily practice limit reached",
    "false_positive_suppressed": "Similar context was dismissed before",
    "smart_suppression_video_call": "You're on a video call",
    "smart_suppression_screen_sharing": "Screen sharing detected",
}

_BRACKETED = re.compile(r"\s*\[.*?\]")


@dataclass(frozen=True)
class SilenceDecision:
    """A tick where something was detected but the engine stayed quiet."""

    timestamp: datetime
    reason: str
    detected_weather: Weather
    signals: tuple[str, ...] = ()
    thinking_text: str | None = None
    effort_level: EffortLevel | None = None

    @property
    def reason_summary(self) -> str:
        base = _BRACKETED.sub("", self.reason).strip().strip("[]").strip()
        if base in _REASON_SUMMARIES:
            return _REASON_SUMMARIES[base]
        if base.startswith("suppressed_"):
            return "Suppressed: " + base.removeprefix("suppressed_").replace("_", " ")
        if base.startswith("delayed_"):
            return "Delayed: " + base.removeprefix("delayed_").replace("_", " ")
        return base.replace("_", " ").title()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "summary": self.reason_summary,
            "detected_weather": self.detected_weather.value,
            "signals": list(self.signals),
        }
