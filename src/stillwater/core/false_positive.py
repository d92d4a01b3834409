"""Rolling log of dismissed nudge contexts (false-positive learning)."""

from collections import Counter
from datetime import timedelta

from stillwater.core.clock import ClockSource, SystemClock
from stillwater.model.models import AnalysisResult, BehaviorMetrics, FalsePositiveEntry

RETENTION = timedelta(days=30)
PATTERN_THRESHOLD = 3
HIGH_SWITCH_RATE = 4.0


def build_context(analysis: AnalysisResult, metrics: BehaviorMetrics | None) -> str:
    """解析結果と行動メトリクスからコンテキスト文字列（指紋）を作る.

    先頭シグナル + ``high_context_switching`` + ``focus_<topApp>`` を連結する。
    """
    parts: list[str] = []
    if analysis.signals:
        parts.append(analysis.signals[0])
    if metrics is not None:
        if metrics.context_switches_per_minute > HIGH_SWITCH_RATE:
            parts.append("high_context_switching")
        top_app = metrics.top_app()
        if top_app:
            parts.append(f"focus_{top_app}")
    return ", ".join(parts)


class FalsePositiveTracker:
    """Append-only dismissal log with a 30 day retention window."""

    def __init__(self, clock: ClockSource | None = None) -> None:
        self.clock = clock or SystemClock()
        self._entries: list[FalsePositiveEntry] = []

    @property
    def entries(self) -> list[FalsePositiveEntry]:
        return list(self._entries)

    def record(self, context: str, confidence: float) -> FalsePositiveEntry:
        """却下を記録し、保持期間外のエントリを削除する."""
        now = self.clock.now()
        entry = FalsePositiveEntry(context=context, confidence=confidence, timestamp=now)
        self._entries.append(entry)
        cutoff = now - RETENTION
        self._entries = [e for e in self._entries if e.timestamp > cutoff]
        return entry

    def matching_dismissals(self, context: str) -> int:
        return sum(1 for e in self._entries if e.context == context)

    def is_false_positive(self, context: str) -> bool:
        return self.matching_dismissals(context) >= PATTERN_THRESHOLD

    def patterns(self) -> list[str]:
        """3 回以上却下されたコンテキストを解析器向けの文字列で返す."""
        counts = Counter(e.context for e in self._entries)
        return [
            f"{context} ({count} dismissals)"
            for context, count in counts.most_common()
            if count >= PATTERN_THRESHOLD
        ]
