import logging
import os
from pathlib import Path

__all__ = ["get_logger", "logger"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("stillwater")
if not logger.handlers:
    logger.setLevel(logging.INFO)
    # ログ出力先は STILLWATER_LOG_DIR で変更できる（既定は ./log）
    _log_dir = Path(os.getenv("STILLWATER_LOG_DIR", "./log"))
    _log_dir.mkdir(parents=True, exist_ok=True)
    _fh = logging.FileHandler(_log_dir / "stillwater.log", encoding="utf-8")
    _fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(_fh)


def get_logger(name: str) -> logging.Logger:
    """パッケージロガーの子ロガーを返す."""
    return logger.getChild(name)
