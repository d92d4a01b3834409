import json
from datetime import date, datetime

from stillwater.core.cooldown_store import CooldownStore
from stillwater.model.models import CooldownState


def test_save_and_load(tmp_path):
    store = CooldownStore(tmp_path / "nested" / "state.json")
    state = CooldownState(
        last_nudge_time=datetime(2026, 3, 2, 10, 0),
        last_practice_nudge_time=datetime(2026, 3, 2, 10, 0),
        consecutive_dismissals=2,
        daily_nudge_count=3,
        daily_practice_nudge_count=1,
        daily_reset_date=date(2026, 3, 2),
    )

    store.save(state)

    assert store.load() == state
    # 一時ファイルは残らない
    assert [p.name for p in store.path.parent.iterdir()] == ["state.json"]


def test_missing_file(tmp_path):
    assert CooldownStore(tmp_path / "missing.json").load() is None


def test_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    assert CooldownStore(path).load() is None


def test_inconsistent_counters(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps({"daily_nudge_count": 1, "daily_practice_nudge_count": 4}),
        encoding="utf-8",
    )

    assert CooldownStore(path).load() is None
