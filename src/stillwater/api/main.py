"""FastAPI app exposing Stillwater endpoints and simple monitoring UI."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from stillwater.api.host import NudgeHost, build_host
from stillwater.core.scheduler import AdaptiveScheduler
from stillwater.logger import get_logger
from stillwater.model.models import DismissalType

logger = get_logger("api")

# --- Pydanticモデル定義 ---


class DismissRequest(BaseModel):
    """ナッジ却下リクエストのモデル."""

    type: DismissalType = DismissalType.IM_FINE


# --- ヘルパー ---


def _host(request: Request) -> NudgeHost:
    host: NudgeHost | None = getattr(request.app.state, "host", None)
    if host is None:
        raise HTTPException(status_code=503, detail="Host not initialized")
    return host


def _scheduler(host: NudgeHost) -> AdaptiveScheduler:
    if host.scheduler is None:
        raise HTTPException(
            status_code=503,
            detail="Analyzer not configured (set LLM_URL and LLM_MODEL)",
        )
    return host.scheduler


def create_app(host: NudgeHost | None = None) -> FastAPI:
    """アプリケーションを作る. ``host`` 未指定なら起動時に環境から組み立てる."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.host = host or build_host()
        app.state.host.log_message("Stillwater API started")
        try:
            yield
        finally:
            scheduler = app.state.host.scheduler
            if scheduler is not None and scheduler.running:
                scheduler.stop()

    app = FastAPI(
        title="Stillwater",
        description="Adaptive wellness nudges driven by screen stress analysis",
        lifespan=lifespan,
    )
    # lifespan を通さないクライアントからも使えるようにしておく
    app.state.host = host

    # --- APIエンドポイント定義 ---

    @app.get("/status")
    async def get_current_status(request: Request) -> dict[str, Any]:
        """現在のシステム状態を取得する."""
        return _host(request).status()

    @app.post("/monitoring/start")
    async def start_monitoring(request: Request) -> dict[str, Any]:
        host = _host(request)
        scheduler = _scheduler(host)
        scheduler.start()
        host.log_message("Monitoring started")
        return {"ok": True, "state": scheduler.state.value}

    @app.post("/monitoring/stop")
    async def stop_monitoring(request: Request) -> dict[str, Any]:
        host = _host(request)
        scheduler = _scheduler(host)
        scheduler.stop()
        host.log_message("Monitoring stopped")
        return {"ok": True, "state": scheduler.state.value}

    @app.post("/monitoring/check")
    async def check_now(request: Request) -> dict[str, Any]:
        """今すぐ 1 回チェックする. 監視中ならループの待機を打ち切る."""
        host = _host(request)
        scheduler = _scheduler(host)
        if scheduler.running:
            scheduler.trigger_immediate_check()
            return {"ok": True, "triggered": True}
        result = await scheduler.run_once()
        return {
            "ok": result is not None,
            "triggered": False,
            "result": result.to_dict() if result else None,
            "decision": (
                host.last_decision.to_dict()
                if result is not None and host.last_decision
                else None
            ),
        }

    @app.post("/nudge/dismiss")
    async def dismiss_nudge(req: DismissRequest, request: Request) -> dict[str, Any]:
        host = _host(request)
        host.dismiss(req.type)
        return {
            "ok": True,
            "consecutive_dismissals": host.engine.consecutive_dismissals,
        }

    @app.post("/practice/complete")
    async def complete_practice(request: Request) -> dict[str, Any]:
        host = _host(request)
        host.complete_practice()
        return {"ok": True, "cooldown": host.engine.cooldown_snapshot()}

    @app.post("/screen/lock")
    async def screen_lock(request: Request) -> dict[str, Any]:
        _host(request).screen_locked()
        return {"ok": True, "screen_locked": True}

    @app.post("/screen/unlock")
    async def screen_unlock(request: Request) -> dict[str, Any]:
        _host(request).screen_unlocked()
        return {"ok": True, "screen_locked": False}

    # --- モニタリング用エンドポイント ---

    @app.get("/api/monitoring_data")
    async def get_monitoring_data(request: Request) -> dict[str, Any]:
        """モニタリングUIに最新データを提供する."""
        return _host(request).monitoring_data()

    @app.get("/monitoring", response_class=HTMLResponse)
    async def get_monitoring_page() -> HTMLResponse:
        """モニタリング用のWebページを返す."""
        return HTMLResponse(content=MONITORING_PAGE)

    return app


MONITORING_PAGE = """
<!DOCTYPE html>
<html lang="ja">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Stillwater Monitor</title>
    <style>
        body { font-family: sans-serif; line-height: 1.6; padding: 20px; background-color: #f4f6f8; color: #333; }
        .container { max-width: 1200px; margin: auto; background: #fff; padding: 20px; border-radius: 8px; box-shadow: 0 0 10px rgba(0,0,0,0.1); }
        h1, h2 { color: #456; }
        .grid-container { display: grid; grid-template-columns: 1fr 1fr; gap: 20px; }
        .grid-item { background: #f9fafb; padding: 15px; border-radius: 5px; }
        pre { background: #eef1f4; padding: 10px; border-radius: 5px; white-space: pre-wrap; word-wrap: break-word; }
        .scroll { height: 240px; overflow-y: scroll; border: 1px solid #ddd; padding: 10px; }
        #weather { font-size: 2em; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Stillwater Monitor</h1>
        <div class="grid-container">
            <div class="grid-item">
                <h2>Weather</h2>
                <div id="weather">-</div>
                <h2>Status</h2>
                <pre id="status">No data yet.</pre>
            </div>
            <div class="grid-item">
                <h2>Last Decision</h2>
                <pre id="decision">No data yet.</pre>
                <h2>Last Silence</h2>
                <pre id="silence">No data yet.</pre>
            </div>
            <div class="grid-item">
                <h2>Last Analysis</h2>
                <pre id="analysis">No data yet.</pre>
            </div>
            <div class="grid-item">
                <h2>Logs</h2>
                <div id="logs" class="scroll"></div>
                <h2 style="margin-top:12px;">Diagnostics</h2>
                <div id="diagnostics" class="scroll"></div>
            </div>
        </div>
    </div>
    <script>
        const pretty = (value) => value ? JSON.stringify(value, null, 2) : 'No data yet.';

        async function fetchData() {
            try {
                const response = await fetch('/api/monitoring_data');
                const data = await response.json();

                document.getElementById('weather').textContent = data.status.weather || '-';
                document.getElementById('status').textContent = pretty(data.status);
                document.getElementById('decision').textContent = pretty(data.last_decision);
                document.getElementById('silence').textContent = data.last_silence
                    ? `${data.last_silence.summary}\\n${pretty(data.last_silence)}`
                    : 'No data yet.';
                document.getElementById('analysis').textContent = pretty(data.last_result);

                for (const [id, lines] of [['logs', data.logs], ['diagnostics', data.diagnostics]]) {
                    const div = document.getElementById(id);
                    div.innerHTML = (lines || []).map(line => `<div>${line}</div>`).join('');
                    div.scrollTop = div.scrollHeight;
                }
            } catch (error) {
                console.error('Error fetching monitoring data:', error);
            }
        }

        setInterval(fetchData, 3000); // Update every 3 seconds
        window.onload = fetchData; // Initial fetch
    </script>
</body>
</html>
"""  # noqa: E501

app = create_app()
