"""Idle detection helpers (Windows uses LASTINPUTINFO; others fallback to 0)."""

from __future__ import annotations

import sys
from typing import Any, ClassVar

if sys.platform == "win32":
    # Windows 専用の ctypes 構成要素だけこのブロックで import する
    from ctypes import Structure, byref, sizeof, windll, wintypes

    class LASTINPUTINFO(Structure):
        """Windows LASTINPUTINFO structure."""

        _fields_: ClassVar[Any] = [
            ("cbSize", wintypes.UINT),
            ("dwTime", wintypes.DWORD),
        ]

    def get_idle_ms() -> int:
        """最後の入力（キーボード/マウス/クリック）からの経過ミリ秒（Windows）."""
        lii = LASTINPUTINFO()
        lii.cbSize = sizeof(LASTINPUTINFO)
        try:
            ok = windll.user32.GetLastInputInfo(byref(lii))
        except OSError:
            return 0
        if not ok:
            return 0
        current_tick = int(windll.kernel32.GetTickCount())
        # GetTickCount は 49.7 日で一周する
        return max(0, (current_tick - int(lii.dwTime)) & 0xFFFFFFFF)

else:
    # 非Windows（CI等）は 0 を返すフォールバック
    def get_idle_ms() -> int:
        """非Windowsでは 0 を返すフォールバック実装。"""
        return 0


def get_idle_seconds() -> float:
    """スケジューラの自動一時停止判定に使うアイドル秒数."""
    return get_idle_ms() / 1000.0


def seconds_since_keyboard_event() -> float | None:
    """直近のキー入力からの秒数. 取得できない環境では ``None``.

    Windows にはキーボード専用の最終入力 API がないため、全入力の
    アイドル時間で代用する。
    """
    if sys.platform != "win32":
        return None
    return get_idle_seconds()
