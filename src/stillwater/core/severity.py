"""Behavioral severity score used to override a quiet analyzer verdict."""

from stillwater.model.models import BehavioralContext

# コンテキスト情報がない場合の既定値
DEFAULT_SEVERITY = 0.5

SWITCH_THRESHOLDS = ((8.0, 0.40), (5.0, 0.30), (3.0, 0.15))
DEVIATION_THRESHOLDS = ((2.5, 0.40), (1.5, 0.30), (0.5, 0.15))
SESSION_THRESHOLDS = ((3 * 3600.0, 0.10), (2 * 3600.0, 0.05))
FRAGMENTED_FOCUS = 0.3
FRAGMENTED_FOCUS_WEIGHT = 0.10


def _step(value: float, thresholds: tuple[tuple[float, float], ...]) -> float:
    # 閾値は降順. 最初に超えたものだけを加点する
    for threshold, weight in thresholds:
        if value > threshold:
            return weight
    return 0.0


def severity(context: BehavioralContext | None) -> float:
    """行動メトリクスとベースライン乖離から 0〜1 の深刻度を計算する.

    Args:
        context: 行動コンテキスト. ``None`` の場合は :data:`DEFAULT_SEVERITY`

    Returns:
        float: 0.0〜1.0 にクランプしたスコア

    """
    if context is None:
        return DEFAULT_SEVERITY

    metrics = context.metrics
    score = _step(metrics.context_switches_per_minute, SWITCH_THRESHOLDS)
    score += _step(context.baseline_deviation, DEVIATION_THRESHOLDS)
    score += _step(metrics.session_duration, SESSION_THRESHOLDS)

    if metrics.application_focus:
        top_focus = max(metrics.application_focus.values())
        if top_focus < FRAGMENTED_FOCUS:
            score += FRAGMENTED_FOCUS_WEIGHT

    # 浮動小数の加算誤差で閾値判定がぶれないよう丸める
    return min(1.0, max(0.0, round(score, 6)))
