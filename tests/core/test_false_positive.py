from conftest import make_analysis

from stillwater.core.false_positive import FalsePositiveTracker, build_context
from stillwater.model.models import BehaviorMetrics

DAY = 24 * 3600


class TestBuildContext:
    def test_full_fingerprint(self):
        metrics = BehaviorMetrics(
            context_switches_per_minute=6.0,
            session_duration=900,
            application_focus={"slack.exe": 0.6, "code.exe": 0.3},
        )

        context = build_context(make_analysis(signals=("inbox", "errors")), metrics)

        assert context == "inbox, high_context_switching, focus_slack.exe"

    def test_without_metrics(self):
        assert build_context(make_analysis(signals=("inbox",)), None) == "inbox"

    def test_empty(self):
        assert build_context(make_analysis(), None) == ""


class TestFalsePositiveTracker:
    def test_threshold(self, clock):
        tracker = FalsePositiveTracker(clock)
        tracker.record("inbox", 0.7)
        tracker.record("inbox", 0.6)

        assert tracker.is_false_positive("inbox") is False

        tracker.record("inbox", 0.8)
        assert tracker.is_false_positive("inbox") is True
        assert tracker.matching_dismissals("other") == 0

    def test_retention_pruned_on_append(self, clock):
        tracker = FalsePositiveTracker(clock)
        tracker.record("old", 0.5)
        clock.advance(31 * DAY)

        tracker.record("new", 0.5)

        assert [e.context for e in tracker.entries] == ["new"]

    def test_patterns(self, clock):
        tracker = FalsePositiveTracker(clock)
        for _ in range(4):
            tracker.record("inbox, focus_outlook.exe", 0.7)
        for _ in range(2):
            tracker.record("errors", 0.7)

        assert tracker.patterns() == ["inbox, focus_outlook.exe (4 dismissals)"]
