from datetime import datetime

import pytest

from jobrunner.domain.errors import InvalidCronSyntaxError
from jobrunner.scheduler.ticker import CronSchedule, english_to_cron, next_tick, to_croniter_expression

BASE = datetime(2024, 1, 1, 12, 0, 0)

def at(second: int, minute: int = 0, hour: int = 12) -> datetime:
    return BASE.replace(hour=hour, minute=minute, second=second)

def test_seconds_field_moves_to_the_end():
    assert to_croniter_expression("*/5 * * * * *") == "* * * * * */5"
    assert to_croniter_expression("0 30 2 * * 1") == "30 2 * * 1 0"

def test_five_fields_fire_on_second_zero():
    assert to_croniter_expression("30 2 * * *") == "30 2 * * * 0"

def test_aliases_pass_through():
    assert to_croniter_expression("@hourly") == "@hourly"

def test_every_five_seconds():
    schedule = CronSchedule("*/5 * * * * *")

    assert [s for s in range(12) if schedule.matches(at(s))] == [0, 5, 10]
    assert schedule.next_after(at(0)) == at(5)

def test_match_ignores_sub_second_part():
    schedule = CronSchedule("*/5 * * * * *")

    assert schedule.matches(at(5).replace(microsecond=250000))

def test_five_field_expression_matches_once_per_minute():
    schedule = CronSchedule("30 2 * * *")

    assert schedule.matches(at(0, minute=30, hour=2))
    assert not schedule.matches(at(1, minute=30, hour=2))
    assert not schedule.matches(at(0, minute=31, hour=2))

def test_daily_alias():
    schedule = CronSchedule("@daily")

    assert schedule.matches(datetime(2024, 1, 2, 0, 0, 0))
    assert not schedule.matches(datetime(2024, 1, 2, 0, 0, 1))

@pytest.mark.parametrize("expression", ["* * *", "* * * * * * * *", "61 * * * * *", "* * * * * mon-xyz", ""])
def test_invalid_expressions(expression):
    with pytest.raises(InvalidCronSyntaxError):
        CronSchedule(expression)

def test_next_tick_is_next_whole_second():
    assert next_tick(at(3).replace(microsecond=999)) == at(4)
    assert next_tick(at(3)) == at(4)

@pytest.mark.parametrize(
    "phrase, expression",
    [
        ("run every 1 second", "* * * * * *"),
        ("every 15 seconds", "*/15 * * * * *"),
        ("every minute", "0 * * * * *"),
        ("Every 5 minutes", "0 */5 * * * *"),
        ("every 2 hours", "0 0 */2 * * *"),
        ("every day", "0 0 0 * * *"),
        ("every day at 4:30 pm", "0 30 16 * * *"),
        ("daily at 12 am", "0 0 0 * * *"),
        ("every monday at 09:15", "0 15 9 * * 1"),
        ("every weekday at noon", "0 0 12 * * 1-5"),
        ("every weekend", "0 0 0 * * 0,6"),
        ("every month", "0 0 0 1 * *"),
    ],
)
def test_english_phrases(phrase, expression):
    assert english_to_cron(phrase) == expression

@pytest.mark.parametrize("phrase", ["whenever it rains", "every 0 minutes", "every day at 25:00", "every day at 13 pm"])
def test_unknown_phrases_are_rejected(phrase):
    with pytest.raises(InvalidCronSyntaxError):
        english_to_cron(phrase)

def test_phrase_schedule_matches():
    schedule = CronSchedule("every day at 4:30 pm")

    assert schedule.matches(datetime(2024, 1, 2, 16, 30, 0))
    assert not schedule.matches(datetime(2024, 1, 2, 16, 30, 1))
    assert CronSchedule("every 15 seconds").next_after(at(0)) == at(15)
