import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from conftest import make_analysis

from stillwater.core.scheduler import (
    AdaptiveScheduler,
    Interval,
    SampleContext,
    SchedulerState,
)
from stillwater.model.models import DecisionKind, EffortLevel, NudgeDecision, Weather


def clear():
    return make_analysis(Weather.CLEAR, None)


def cloudy():
    return make_analysis(Weather.CLOUDY, None)


def stormy():
    return make_analysis(Weather.STORMY)


def sampler_for(*results):
    return AsyncMock(side_effect=list(results))


class TestIntervalAdjustment:
    """サンプル結果による間隔調整"""

    @pytest.mark.asyncio
    async def test_stormy_shortens_interval(self, clock):
        scheduler = AdaptiveScheduler(sampler_for(stormy()), clock=clock)

        await scheduler.run_once()

        assert scheduler.current_interval == Interval.STORMY == 180

    @pytest.mark.asyncio
    async def test_clear_backs_off_after_three(self, clock):
        scheduler = AdaptiveScheduler(sampler_for(*[clear() for _ in range(6)]), clock=clock)

        intervals = []
        for _ in range(6):
            await scheduler.run_once()
            intervals.append(scheduler.current_interval)

        assert intervals == [300, 300, 450, 675, 900, 900]

    @pytest.mark.asyncio
    async def test_cloudy_resets_backoff(self, clock):
        results = [clear(), clear(), clear(), cloudy(), clear()]
        scheduler = AdaptiveScheduler(sampler_for(*results), clock=clock)

        for _ in results:
            await scheduler.run_once()

        assert scheduler.current_interval == Interval.BASE
        assert scheduler.consecutive_clear_count == 1

    def test_practice_and_dismissal_hooks(self, clock):
        scheduler = AdaptiveScheduler(sampler_for(), clock=clock)

        scheduler.record_practice_completed()
        assert scheduler.current_interval == 600

        scheduler.record_dismissal()
        assert scheduler.current_interval == 900
        scheduler.record_dismissal()
        scheduler.record_dismissal()
        assert scheduler.current_interval == 900
        assert scheduler.dismissal_count == 3

    @pytest.mark.asyncio
    async def test_interval_stays_in_bounds(self, clock):
        pattern = [stormy(), clear(), clear(), clear(), clear(), clear(), cloudy(), stormy()]
        scheduler = AdaptiveScheduler(sampler_for(*pattern * 3), clock=clock)

        for i in range(len(pattern) * 3):
            await scheduler.run_once()
            if i % 5 == 0:
                scheduler.record_dismissal()
            if i % 7 == 0:
                scheduler.record_practice_completed()
            assert Interval.MIN <= scheduler.current_interval <= Interval.MAX


class TestFailures:
    @pytest.mark.asyncio
    async def test_sampler_failure_backs_off(self, clock):
        diagnostics = []
        scheduler = AdaptiveScheduler(
            AsyncMock(side_effect=TimeoutError("analyzer timed out")),
            clock=clock,
            on_diagnostic=diagnostics.append,
        )

        result = await scheduler.run_once()

        assert result is None
        assert scheduler.current_interval == 600
        assert any("Check failed" in d for d in diagnostics)
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_failure_keeps_longer_interval(self, clock):
        scheduler = AdaptiveScheduler(AsyncMock(side_effect=ValueError("bad")), clock=clock)
        scheduler.record_dismissal()

        await scheduler.run_once()

        assert scheduler.current_interval == 900

    @pytest.mark.asyncio
    async def test_notifier_failure_backs_off(self, clock):
        diagnostics = []
        scheduler = AdaptiveScheduler(
            sampler_for(stormy()),
            decide=lambda _: NudgeDecision(True, "approved", DecisionKind.APPROVED),
            clock=clock,
            on_nudge=Mock(side_effect=OSError("toast failed")),
            on_diagnostic=diagnostics.append,
        )

        result = await scheduler.run_once()

        assert result is None
        assert scheduler.current_interval == 600
        assert len(scheduler.recent_results) == 1
        assert diagnostics == ["Check failed (OSError): toast failed"]

    @pytest.mark.asyncio
    async def test_decide_failure_keeps_loop_alive(self, clock):
        """判定コールバックが例外を出してもループは次のティックへ進む"""
        diagnostics = []
        intervals = []
        decide = Mock(
            side_effect=[
                RuntimeError("foreground window lookup failed"),
                NudgeDecision(False, "min_nudge_interval", DecisionKind.DENIED),
            ]
        )

        async def fake_sleep(seconds):
            intervals.append(seconds)
            clock.advance(seconds)
            if len(intervals) == 2:
                scheduler.stop()

        sampler = sampler_for(stormy(), stormy())
        scheduler = AdaptiveScheduler(
            sampler,
            decide=decide,
            clock=clock,
            sleep=fake_sleep,
            on_diagnostic=diagnostics.append,
        )

        scheduler.start()
        await scheduler.task

        assert sampler.await_count == 2
        assert decide.call_count == 2
        assert intervals == [600, 180]
        assert any("Check failed (RuntimeError)" in d for d in diagnostics)
        assert scheduler.running is False


class TestEffortAndCallbacks:
    @pytest.mark.asyncio
    async def test_effort_level(self, clock):
        sampler = sampler_for(stormy(), clear(), clear(), clear())
        scheduler = AdaptiveScheduler(sampler, clock=clock)

        assert scheduler.effort_level() is EffortLevel.LOW
        await scheduler.run_once()
        assert scheduler.effort_level() is EffortLevel.HIGH

        for _ in range(3):
            await scheduler.run_once()
        # stormy が直近 3 件から外れた
        assert scheduler.effort_level() is EffortLevel.LOW

        scheduler.record_dismissal()
        assert scheduler.effort_level() is EffortLevel.HIGH

    @pytest.mark.asyncio
    async def test_sampler_receives_context(self, clock):
        sampler = sampler_for(stormy(), clear())
        scheduler = AdaptiveScheduler(sampler, clock=clock)

        await scheduler.run_once()
        await scheduler.run_once()

        context = sampler.await_args.args[0]
        assert isinstance(context, SampleContext)
        assert context.effort_level is EffortLevel.HIGH
        assert [r.weather for r in context.recent_results] == [Weather.STORMY]

    @pytest.mark.asyncio
    async def test_nudge_and_silence_callbacks(self, clock):
        approved = NudgeDecision(True, "approved", DecisionKind.APPROVED)
        denied = NudgeDecision(False, "min_nudge_interval", DecisionKind.DENIED)
        decide = Mock(side_effect=[approved, denied, denied])
        on_nudge, on_silence, on_sample = Mock(), Mock(), Mock()
        scheduler = AdaptiveScheduler(
            sampler_for(stormy(), stormy(), clear()),
            decide=decide,
            clock=clock,
            on_nudge=on_nudge,
            on_silence=on_silence,
            on_sample=on_sample,
        )

        for _ in range(3):
            await scheduler.run_once()

        assert on_sample.call_count == 3
        on_nudge.assert_called_once()
        assert on_nudge.call_args.args[0] is approved
        # clear かつナッジなしの拒否は「沈黙」として報告しない
        on_silence.assert_called_once_with("min_nudge_interval", Weather.STORMY, ())


class TestLoop:
    """ループ本体（スリープは FixedClock を進めるだけ）"""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, clock):
        sleeps = []
        results = [stormy(), cloudy(), clear()]

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds)
            if len(sleeps) == len(results):
                scheduler.stop()

        monitor = Mock()
        scheduler = AdaptiveScheduler(
            sampler_for(*results), clock=clock, sleep=fake_sleep, activity_monitor=monitor
        )

        scheduler.start()
        assert scheduler.running is True
        await scheduler.task

        assert sleeps == [180, 300, 300]
        assert scheduler.running is False
        assert scheduler.state is SchedulerState.IDLE
        monitor.start.assert_called_once()
        monitor.stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_idle_auto_pause(self, clock):
        sampler = sampler_for(stormy())
        on_auto_pause = Mock()
        monitor = Mock()
        scheduler = AdaptiveScheduler(
            sampler,
            clock=clock,
            idle_probe=lambda: 31 * 60.0,
            activity_monitor=monitor,
            on_auto_pause=on_auto_pause,
        )

        scheduler.start()
        await scheduler.task

        sampler.assert_not_awaited()
        on_auto_pause.assert_called_once()
        monitor.stop.assert_called_once()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_sleep_gap_resets_session(self, clock):
        diagnostics = []

        async def slept_through(seconds):
            # ホストのスリープで想定の 3 倍が経過
            clock.advance(seconds * 3)
            scheduler.stop()

        monitor = Mock()
        scheduler = AdaptiveScheduler(
            sampler_for(clear(), clear(), clear()),
            clock=clock,
            sleep=slept_through,
            activity_monitor=monitor,
            on_diagnostic=diagnostics.append,
        )
        await scheduler.run_once()
        await scheduler.run_once()
        assert scheduler.consecutive_clear_count == 2
        scheduler.record_dismissal()

        scheduler.start()
        await scheduler.task

        assert scheduler.recent_results == ()
        assert scheduler.last_sample_at is None
        assert scheduler.dismissal_count == 0
        assert scheduler.consecutive_clear_count == 0
        assert scheduler.current_interval == Interval.BASE
        monitor.reset.assert_called_once()
        assert "Woke from system sleep, session reset" in diagnostics

    @pytest.mark.asyncio
    async def test_resume_within_debounce_keeps_interval(self, clock):
        scheduler = AdaptiveScheduler(sampler_for(), clock=clock)
        scheduler.current_interval = 900
        scheduler.dismissal_count = 2
        scheduler.last_sample_at = clock.now() - timedelta(seconds=30)

        scheduler.start()
        scheduler.stop()
        await scheduler.task

        assert scheduler.current_interval == 900
        assert scheduler.dismissal_count == 2

    @pytest.mark.asyncio
    async def test_stale_start_resets_interval(self, clock):
        scheduler = AdaptiveScheduler(sampler_for(), clock=clock)
        scheduler.current_interval = 900
        scheduler.last_sample_at = clock.now() - timedelta(seconds=120)

        scheduler.start()
        scheduler.stop()
        await scheduler.task

        assert scheduler.current_interval == Interval.BASE

    @pytest.mark.asyncio
    async def test_start_replaces_previous_task(self, clock):
        scheduler = AdaptiveScheduler(sampler_for(stormy(), stormy()), clock=clock)

        scheduler.start()
        first = scheduler.task
        for _ in range(5):
            await asyncio.sleep(0)

        scheduler.start()
        second = scheduler.task
        with pytest.raises(asyncio.CancelledError):
            await first

        assert first is not second
        assert first.cancelled()
        assert scheduler.running is True

        scheduler.stop()
        await second

    @pytest.mark.asyncio
    async def test_trigger_immediate_check(self, clock):
        sampler = sampler_for(stormy(), cloudy())
        scheduler = AdaptiveScheduler(sampler, clock=clock)

        scheduler.start()
        for _ in range(5):
            await asyncio.sleep(0)
        assert sampler.await_count == 1

        scheduler.trigger_immediate_check()
        for _ in range(20):
            if sampler.await_count == 2:
                break
            await asyncio.sleep(0)

        assert sampler.await_count == 2
        scheduler.stop()
        await scheduler.task
