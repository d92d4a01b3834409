"""Settings for Stillwater, read from the environment and ``.env.local``."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 5577
DEFAULT_ACTIVE_HOURS_START = 9
DEFAULT_LLM_TIMEOUT = 60.0


def load_local_env(path: Path | None = None) -> None:
    """``.env.local`` を読み込んで環境変数を上書きする."""
    load_dotenv(dotenv_path=path or REPO_ROOT / ".env.local", override=True)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        msg = f"{name} must be an integer, got {raw!r}"
        raise RuntimeError(msg) from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        msg = f"{name} must be a number, got {raw!r}"
        raise RuntimeError(msg) from e


@dataclass(frozen=True)
class Settings:
    """Runtime configuration.

    ``llm_url`` / ``llm_model`` are only required once an analyzer is built,
    so the API can still start (and report status) without them.
    """

    llm_url: str | None = None
    llm_model: str | None = None
    llm_timeout: float = DEFAULT_LLM_TIMEOUT
    active_hours_start: int = DEFAULT_ACTIVE_HOURS_START
    state_path: Path | None = None
    log_dir: Path = Path("./log")
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から設定を組み立てる."""
        state_path = os.getenv("STILLWATER_STATE_PATH")
        active_start = _int_env(
            "STILLWATER_ACTIVE_HOURS_START", DEFAULT_ACTIVE_HOURS_START
        )
        if not 0 <= active_start <= 23:  # noqa: PLR2004
            msg = "STILLWATER_ACTIVE_HOURS_START must be an hour between 0 and 23"
            raise RuntimeError(msg)
        return cls(
            llm_url=os.getenv("LLM_URL") or None,
            llm_model=os.getenv("LLM_MODEL") or None,
            llm_timeout=_float_env("LLM_TIMEOUT", DEFAULT_LLM_TIMEOUT),
            active_hours_start=active_start,
            state_path=Path(state_path).expanduser() if state_path else None,
            log_dir=Path(os.getenv("STILLWATER_LOG_DIR", "./log")),
            api_host=os.getenv("STILLWATER_API_HOST", DEFAULT_API_HOST),
            api_port=_int_env("STILLWATER_API_PORT", DEFAULT_API_PORT),
        )
