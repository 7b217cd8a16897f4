from datetime import date, datetime

import pytest

from lms_tools import weeks


def test_week_start_is_monday():
    assert weeks.week_start("2025-08-07") == date(2025, 8, 4)
    assert weeks.week_start(date(2025, 8, 4)) == date(2025, 8, 4)
    assert weeks.week_start(datetime(2025, 8, 10, 23, 0)) == date(2025, 8, 4)


def test_week_key_uses_iso_year_across_new_year():
    # 2024-12-30 is the Monday of ISO week 1 of 2025.
    assert weeks.week_key("2024-12-30", "weekdays") == "weekdays_2025_W01"
    assert weeks.week_key("2025-01-05", "weekdays") == "weekdays_2025_W01"
    assert weeks.week_key("2021-01-03", "weekends") == "weekends_2020_W53"


def test_schedule_days():
    assert weeks.schedule_days("weekdays") == (0, 1, 2, 3, 4)
    assert weeks.schedule_days("weekends") == (5, 6)
    with pytest.raises(ValueError):
        weeks.schedule_days("holidays")


def test_week_range():
    assert weeks.week_range("2025-08-06", "weekdays") == (date(2025, 8, 4), date(2025, 8, 8))
    assert weeks.week_range("2025-08-06", "weekends") == (date(2025, 8, 9), date(2025, 8, 10))


def test_time_slots():
    assert len(weeks.TIME_SLOTS) == 13
    assert weeks.TIME_SLOTS[0] == "08:00"
    assert weeks.TIME_SLOTS[-1] == "20:00"
    assert weeks.slot_label(2) == "10:00"
    assert weeks.slot_index("9:00") == 1
    assert weeks.slot_index("20:00") == 12
    with pytest.raises(ValueError):
        weeks.slot_index("08:30")
    with pytest.raises(ValueError):
        weeks.slot_label(13)


def test_slot_span_and_day_date():
    assert weeks.slot_span(0, 3) == ("08:00", "11:00")
    assert weeks.day_date("2025-08-07", 6) == date(2025, 8, 10)
    assert len(weeks.week_dates("2025-08-07")) == 7
