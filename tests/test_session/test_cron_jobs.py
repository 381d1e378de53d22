from datetime import UTC, datetime, timedelta

import pytest

from shellpilot.cron import compute_next_run, is_due, parse_schedule, previous_slot, schedule_to_text


def test_parse_schedule_supports_interval_daily_and_weekly():
    assert parse_schedule("every 15m") == {"type": "interval", "unit": "minutes", "interval": 15}
    assert parse_schedule("every 2h") == {"type": "interval", "unit": "hours", "interval": 2}
    assert parse_schedule("daily 09:30") == {"type": "daily", "hour": 9, "minute": 30}
    assert parse_schedule("weekly wed,Mon 18:05") == {
        "type": "weekly",
        "days": [0, 2],
        "hour": 18,
        "minute": 5,
    }


@pytest.mark.parametrize(
    "text",
    ["", "every", "every 0m", "every 5d", "daily 25:00", "weekly funday 10:00", "hourly"],
)
def test_parse_schedule_rejects_invalid_input(text):
    with pytest.raises(ValueError):
        parse_schedule(text)


def test_schedule_to_text_round_trips_the_compact_form():
    for text in ("every 15m", "every 2h", "daily 09:30", "weekly mon,fri 18:00"):
        assert schedule_to_text(parse_schedule(text)) == text


def test_interval_due_when_never_run_or_elapsed():
    schedule = parse_schedule("every 30m")
    now = datetime(2026, 5, 4, 12, 0, tzinfo=UTC)
    assert is_due(schedule, None, now) is True
    assert is_due(schedule, now - timedelta(minutes=29), now) is False
    assert is_due(schedule, now - timedelta(minutes=30), now) is True


def test_daily_due_once_per_slot():
    schedule = parse_schedule("daily 09:00")
    now = datetime(2026, 5, 4, 9, 30, tzinfo=UTC)
    assert previous_slot(schedule, now) == datetime(2026, 5, 4, 9, 0, tzinfo=UTC)
    assert is_due(schedule, None, now) is True
    assert is_due(schedule, datetime(2026, 5, 3, 9, 1, tzinfo=UTC), now) is True
    assert is_due(schedule, datetime(2026, 5, 4, 9, 5, tzinfo=UTC), now) is False

    before_slot = datetime(2026, 5, 4, 8, 0, tzinfo=UTC)
    assert is_due(schedule, datetime(2026, 5, 3, 9, 1, tzinfo=UTC), before_slot) is False


def test_weekly_slot_looks_back_to_last_matching_day():
    # 2026-05-06 is a Wednesday
    schedule = parse_schedule("weekly mon 10:00")
    now = datetime(2026, 5, 6, 12, 0, tzinfo=UTC)
    assert previous_slot(schedule, now) == datetime(2026, 5, 4, 10, 0, tzinfo=UTC)
    assert compute_next_run(schedule, now) == datetime(2026, 5, 11, 10, 0, tzinfo=UTC)


def test_compute_next_run_is_strictly_after_now():
    schedule = parse_schedule("daily 09:00")
    at_slot = datetime(2026, 5, 4, 9, 0, tzinfo=UTC)
    assert compute_next_run(schedule, at_slot) == datetime(2026, 5, 5, 9, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("every 1h"), at_slot) == at_slot + timedelta(hours=1)
