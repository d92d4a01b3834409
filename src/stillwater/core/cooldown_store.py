"""Optional on-disk persistence of the engine's cooldown/quota state."""

import json
import os
from pathlib import Path

from stillwater.logger import get_logger
from stillwater.model.models import CooldownState

logger = get_logger("cooldown_store")


class CooldownStore:
    """JSON file holding one :class:`CooldownState`.

    Without a store the engine keeps its state in memory only, so daily
    counters start over on every launch. With one, the state survives
    restarts and the daily limits hold across relaunches.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> CooldownState | None:
        """Load saved state.

        Returns:
            The saved state, or ``None`` when the file is missing or corrupted.
        """
        if not self.path.exists():
            return None
        try:
            with self.path.open(encoding="utf-8") as f:
                return CooldownState.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to load cooldown state from %s: %s", self.path, e)
            return None

    def save(self, state: CooldownState) -> None:
        """一時ファイル + rename でアトミックに保存する.

        Raises:
            OSError: ディレクトリ作成や書き込みに失敗した場合

        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
