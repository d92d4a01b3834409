"""Clock sources. Every timestamp in the core goes through one of these."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta


class ClockSource(ABC):
    """現在時刻を返すクロック. ``advance`` でオフセットを足せる."""

    def __init__(self, offset: float = 0.0) -> None:
        self.offset = offset

    @abstractmethod
    def _base(self) -> datetime: ...

    def now(self) -> datetime:
        return self._base() + timedelta(seconds=self.offset)

    def advance(self, seconds: float) -> None:
        """仮想時間を進める（テスト・シナリオ実行用）."""
        self.offset += seconds


class SystemClock(ClockSource):
    """Local wall-clock time plus an optional offset."""

    def _base(self) -> datetime:
        return datetime.now()  # noqa: DTZ005


class FixedClock(ClockSource):
    """Frozen at ``start`` and moved only by :meth:`advance`."""

    def __init__(self, start: datetime) -> None:
        super().__init__()
        self.start = start

    def _base(self) -> datetime:
        return self.start
