import base64
import json
import os
import re
import time
from dataclasses import dataclass
from typing import Any

import requests

from stillwater.logger import get_logger
from stillwater.model.models import (
    AnalysisResult,
    EffortLevel,
    NudgeType,
    SystemContext,
    Weather,
)

logger = get_logger("llm")

HTTP_OK = 200
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500
HTTP_MAX_STATUS = 600
BODY_PREVIEW_CHARS = 200

AVAILABLE_PRACTICES = (
    "physiological-sigh",
    "box-breathing",
    "grounding-54321",
    "stop-technique",
    "self-compassion",
    "extended-exhale",
    "thought-defusion",
    "coherent-breathing",
)

SYSTEM_PROMPT = """
You are a calm stress detection assistant running on the user's desktop.
You analyze screenshots to assess stress level using a weather metaphor.

OBSERVE: visual cues such as tab count, notification volume, app switching,
video calls, error messages, deadline content. NOT message content, names,
or documents.

WEATHER:
- clear: relaxed, focused, organized, single task
- cloudy: mild tension, multiple apps, moderate inbox
- stormy: high stress, overflowing notifications, errors, call fatigue, chaos

NUDGE PHILOSOPHY:
- You are a gentle friend, NOT an alarm. Confidence >= 0.6 to suggest practice.
- Prefer "encouragement" over "practice" when uncertain.
- NEVER nudge during presentations or screen share.
- After 3 consecutive dismissals: nudge_type = null.

NEVER: read or quote messages, mention names, reference documents,
diagnose conditions.

Return ONLY a JSON object with these exact keys:
weather, confidence, signals, nudge_type, nudge_message, suggested_practice_id
""".strip()

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class AnalyzerError(Exception):
    """解析器呼び出しの失敗（スケジューラはどれも同じようにバックオフする）."""


class AnalyzerUnavailable(AnalyzerError):
    """ネットワークエラー・タイムアウト."""


class RateLimited(AnalyzerError):
    """HTTP 429."""


class AnalyzerServerError(AnalyzerError):
    """HTTP 5xx."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"analyzer server error: HTTP {status_code}")
        self.status_code = status_code


class InvalidResponse(AnalyzerError):
    """想定外のステータス、または解釈できない応答本文."""


@dataclass(frozen=True)
class AnalyzerContext:
    """解析プロンプトに埋め込むセッション情報."""

    time: str
    day_of_week: str
    recent_weathers: tuple[Weather, ...] = ()
    last_nudge_minutes_ago: int | None = None
    last_nudge_type: NudgeType | None = None
    dismissal_count: int = 0
    preferred_practices: tuple[str, ...] = ()
    learned_patterns: tuple[str, ...] = ()
    system_context: SystemContext | None = None


def build_user_prompt(context: AnalyzerContext) -> str:
    """観測データからコンテキストプロンプトを構築."""
    recent = ", ".join(w.value for w in context.recent_weathers) or "none"
    if context.last_nudge_minutes_ago is not None and context.last_nudge_type:
        last_nudge = (
            f"{context.last_nudge_minutes_ago} min ago "
            f"({context.last_nudge_type.value})"
        )
    else:
        last_nudge = "none"

    lines = [
        "Analyze this desktop screenshot. Determine stress level as weather.",
        "",
        "CONTEXT:",
        f"- Time: {context.time} ({context.day_of_week})",
        f"- Recent weather: {recent}",
        f"- Last nudge: {last_nudge}",
        f"- Dismissals (this session): {context.dismissal_count}",
        f"- Preferences: {', '.join(context.preferred_practices) or 'none'}",
        f"- Override patterns: {'; '.join(context.learned_patterns) or 'none'}",
    ]
    system = context.system_context
    if system is not None:
        lines.append(f"- Active app: {system.active_app}")
        if system.recent_app_switches:
            lines.append(
                f"- Recent app switches: {' -> '.join(system.recent_app_switches)}"
            )
    lines += [
        "",
        f"AVAILABLE PRACTICES: {', '.join(AVAILABLE_PRACTICES)}",
        "",
        "Respond JSON only.",
    ]
    return "\n".join(lines)


def extract_json_object(content: str) -> dict[str, Any]:
    """応答本文から JSON オブジェクトを取り出す（コードフェンスや前置きを許容）.

    Raises:
        InvalidResponse: JSON オブジェクトが見つからない/壊れている場合

    """
    match = _JSON_OBJECT.search(content)
    if match is None:
        msg = f"no JSON object in response: {content[:BODY_PREVIEW_CHARS]!r}"
        raise InvalidResponse(msg)
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        msg = f"malformed JSON in response: {e}"
        raise InvalidResponse(msg) from e
    if not isinstance(data, dict):
        msg = "response JSON is not an object"
        raise InvalidResponse(msg)
    return data


def parse_analysis(
    data: dict[str, Any],
    effort: EffortLevel | None = None,
    thinking_text: str | None = None,
) -> AnalysisResult:
    """JSON オブジェクトを AnalysisResult に変換する."""
    raw_weather = str(data.get("weather", "")).strip().lower()
    try:
        weather = Weather(raw_weather)
    except ValueError as e:
        msg = f"unknown weather: {data.get('weather')!r}"
        raise InvalidResponse(msg) from e

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError) as e:
        msg = f"invalid confidence: {data.get('confidence')!r}"
        raise InvalidResponse(msg) from e

    raw_signals = data.get("signals") or []
    if isinstance(raw_signals, str):
        raw_signals = [raw_signals]
    signals = tuple(str(s) for s in raw_signals if s)

    return AnalysisResult(
        weather=weather,
        confidence=min(1.0, max(0.0, confidence)),
        signals=signals,
        nudge_type=NudgeType.from_raw(data.get("nudge_type")),
        message=data.get("nudge_message") or None,
        suggested_practice_id=data.get("suggested_practice_id") or None,
        thinking_text=thinking_text,
        effort_level=effort,
    )


class VisionAnalyzer:
    """OpenAI互換APIクライアント（LM Studio などのビジョン対応モデル向け）."""

    def __init__(
        self,
        base_url: str,
        model_name: str,
        timeout: float = 60.0,
    ) -> None:
        """初期化

        Args:
        base_url: OpenAI互換APIのベースURL（例: http://127.0.0.1:1234）
        model_name: 使用するモデル名（例: google/gemma-3-4b）
        timeout: APIタイムアウト(秒)

        """
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.timeout = timeout
        self.chat_url = f"{self.base_url}/v1/chat/completions"

        # 最後のAPI呼び出し時刻（レート制限用）
        self.last_call_time: float = 0.0
        self.min_call_interval = 1.0  # 最小呼び出し間隔（秒）

    def is_available(self) -> bool:
        """LLMサービスが利用可能かチェック."""
        try:
            response = requests.get(f"{self.base_url}/v1/models", timeout=5)
        except requests.RequestException:
            return False
        return response.status_code == HTTP_OK

    def _rate_limit(self) -> None:
        """レート制限を適用."""
        elapsed = time.time() - self.last_call_time
        if elapsed < self.min_call_interval:
            time.sleep(self.min_call_interval - elapsed)
        self.last_call_time = time.time()

    def build_payload(
        self, image: bytes, context: AnalyzerContext, effort: EffortLevel
    ) -> dict[str, Any]:
        encoded = base64.b64encode(image).decode()
        return {
            "model": self.model_name,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_user_prompt(context)},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{encoded}"},
                        },
                    ],
                },
            ],
            "temperature": 0.2,
            "max_tokens": effort.max_response_tokens,
        }

    def analyze(
        self,
        image: bytes,
        context: AnalyzerContext,
        effort: EffortLevel = EffortLevel.LOW,
    ) -> AnalysisResult:
        """スクリーンショット 1 枚を解析する.

        Raises:
            AnalyzerUnavailable: 接続失敗・タイムアウト
            RateLimited: HTTP 429
            AnalyzerServerError: HTTP 5xx
            InvalidResponse: その他のステータス、または応答が解釈できない

        """
        self._rate_limit()
        payload = self.build_payload(image, context, effort)
        try:
            response = requests.post(
                self.chat_url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            raise AnalyzerUnavailable(str(e)) from e

        status = response.status_code
        if status == HTTP_TOO_MANY_REQUESTS:
            msg = "analyzer rate limited"
            raise RateLimited(msg)
        if HTTP_SERVER_ERROR <= status < HTTP_MAX_STATUS:
            raise AnalyzerServerError(status)
        if status != HTTP_OK:
            msg = f"HTTP {status}: {response.text[:BODY_PREVIEW_CHARS]}"
            raise InvalidResponse(msg)

        try:
            message = response.json()["choices"][0]["message"]
            content = message["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            msg = f"unexpected response shape: {response.text[:BODY_PREVIEW_CHARS]}"
            raise InvalidResponse(msg) from e

        result = parse_analysis(
            extract_json_object(content),
            effort=effort,
            thinking_text=message.get("reasoning_content") or None,
        )
        logger.info(
            "analysis weather=%s confidence=%.2f nudge=%s",
            result.weather.value,
            result.confidence,
            result.nudge_type.value if result.nudge_type else None,
        )
        return result


# 便利関数
def create_analyzer(
    base_url: str | None = None,
    model_name: str | None = None,
    timeout: float | None = None,
) -> VisionAnalyzer:
    """解析器のファクトリ関数.

    環境変数で設定（必須）:
    - LLM_URL: OpenAI互換APIのベースURL（例: http://127.0.0.1:1234）
    - LLM_MODEL: 使用するモデル名（例: google/gemma-3-4b）
    """
    resolved_base = base_url or os.getenv("LLM_URL")
    resolved_model = model_name or os.getenv("LLM_MODEL")
    if not resolved_base or not resolved_model:
        msg = "LLM_URL and LLM_MODEL must be set (e.g., in .env.local)."
        raise RuntimeError(msg)
    return VisionAnalyzer(
        base_url=resolved_base,
        model_name=resolved_model,
        timeout=timeout if timeout is not None else 60.0,
    )
