from unittest.mock import AsyncMock

import pytest
from conftest import make_analysis
from fastapi.testclient import TestClient

from stillwater.api.host import NudgeHost
from stillwater.api.main import create_app
from stillwater.core.scheduler import AdaptiveScheduler
from stillwater.core.suppression import NullEnvironment, SuppressionGate
from stillwater.model.models import DismissalType, NudgeType, Weather
from stillwater.ui.notifications import NotificationService


@pytest.fixture
def sampler():
    return AsyncMock(return_value=make_analysis(Weather.STORMY, signals=("errors",)))


@pytest.fixture
def host(engine, clock, sampler):
    """FixedClock と偽サンプラで組み立てたホスト"""
    scheduler = AdaptiveScheduler(sampler, clock=clock)
    gate = SuppressionGate(NullEnvironment(), clock)
    service = NotificationService()
    service.platform = "Linux"
    return NudgeHost(engine, gate, service, clock=clock, scheduler=scheduler)


@pytest.fixture
def client(host):
    with TestClient(create_app(host)) as test_client:
        yield test_client


class TestNudgeHost:
    def test_present_records_shown(self, host, engine):
        decision = host.decide(make_analysis())

        host.present(decision)

        assert engine.today_nudge_count == 1
        assert host.pending_nudge is decision
        assert host.last_nudge[1] is NudgeType.PRACTICE
        assert host.notifier.get_notification_history()[0]["level"] == "practice"

    def test_present_ignores_denied(self, host, engine):
        host.screen_locked()
        decision = host.decide(make_analysis())

        assert decision.reason == "suppressed_screen_locked"
        assert host.present(decision) is False
        assert engine.today_nudge_count == 0

    def test_dismiss_im_fine_learns_context(self, host, engine):
        result = make_analysis(signals=("errors",))
        host.present(host.decide(result), result)

        host.dismiss(DismissalType.IM_FINE)

        assert engine.consecutive_dismissals == 1
        assert engine.tracker.matching_dismissals("errors") == 1
        assert host.scheduler.dismissal_count == 1
        assert host.pending_nudge is None

    def test_dismiss_later(self, host, engine):
        result = make_analysis(signals=("errors",))
        host.present(host.decide(result), result)

        host.dismiss(DismissalType.LATER)

        assert engine.consecutive_dismissals == 0
        assert engine.state.last_dismissal_time is not None
        assert engine.tracker.entries == []

    def test_auto_dismiss_records_nothing(self, host, engine):
        host.present(host.decide(make_analysis()))

        host.dismiss(DismissalType.AUTO_DISMISSED)

        assert engine.state.last_dismissal_time is None
        assert host.scheduler.dismissal_count == 0
        assert host.pending_nudge is None

    def test_complete_practice(self, host, engine):
        host.complete_practice()

        assert engine.state.last_practice_completed_time is not None
        assert host.scheduler.current_interval == 600


class TestHostAPI:
    """HTTP API のテスト"""

    def test_status(self, client):
        response = client.get("/status")

        assert response.status_code == 200
        data = response.json()
        assert data["monitoring"] is False
        assert data["analyzer_configured"] is True
        assert data["cooldown"]["daily_nudge_count"] == 0

    def test_check_shows_nudge(self, client, host, sampler):
        response = client.post("/monitoring/check")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["result"]["weather"] == "stormy"
        assert data["decision"]["should_show"] is True
        assert data["decision"]["kind"] == "approved"
        sampler.assert_awaited_once()
        assert host.pending_nudge is not None
        assert len(host.notifier.get_notification_history()) == 1

    def test_second_check_is_silenced(self, client, host):
        client.post("/monitoring/check")
        response = client.post("/monitoring/check")

        assert response.json()["decision"]["reason"] == "hard_min_interval"
        assert host.last_silence is not None
        assert host.last_silence.reason_summary == "Too soon since last check"

    def test_screen_lock_suppresses(self, client, host):
        assert client.post("/screen/lock").json()["screen_locked"] is True

        decision = client.post("/monitoring/check").json()["decision"]

        assert decision["reason"] == "suppressed_screen_locked"
        assert decision["kind"] == "suppressed"
        assert client.get("/status").json()["screen_locked"] is True

        client.post("/screen/unlock")
        assert client.get("/status").json()["screen_locked"] is False

    def test_dismiss(self, client, engine):
        client.post("/monitoring/check")

        response = client.post("/nudge/dismiss", json={"type": "im_fine"})

        assert response.status_code == 200
        assert response.json()["consecutive_dismissals"] == 1
        assert engine.consecutive_dismissals == 1

    def test_dismiss_rejects_unknown_type(self, client):
        response = client.post("/nudge/dismiss", json={"type": "whatever"})

        assert response.status_code == 422

    def test_practice_complete(self, client, engine):
        response = client.post("/practice/complete")

        assert response.status_code == 200
        assert response.json()["cooldown"]["cooldown_reason"] == "post_practice_cooldown"
        assert engine.state.last_practice_completed_time is not None

    def test_start_and_stop(self, client, host):
        started = client.post("/monitoring/start")
        assert started.status_code == 200
        assert host.scheduler.running is True

        stopped = client.post("/monitoring/stop")
        assert stopped.json()["state"] == "idle"
        assert host.scheduler.running is False

    def test_monitoring_data_and_page(self, client):
        client.post("/monitoring/check")

        data = client.get("/api/monitoring_data").json()
        page = client.get("/monitoring")

        assert data["last_result"]["weather"] == "stormy"
        assert data["last_decision"]["reason"] == "approved"
        assert any("Decision: approved" in line for line in data["logs"])
        assert page.status_code == 200
        assert "Stillwater Monitor" in page.text


def test_monitoring_requires_analyzer(engine, clock):
    host = NudgeHost(engine, SuppressionGate(NullEnvironment(), clock), NotificationService())

    with TestClient(create_app(host)) as client:
        assert client.post("/monitoring/start").status_code == 503
        assert client.get("/status").json()["analyzer_configured"] is False
