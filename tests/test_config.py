import pytest

from app.config import Settings, parse_schedule_days


def test_parse_schedule_days():
    assert parse_schedule_days("3,5,7") == (3, 5, 7)
    assert parse_schedule_days(" 1, 2 ,") == (1, 2)
    assert parse_schedule_days("") == ()


def test_parse_schedule_days_rejects_non_positive():
    with pytest.raises(ValueError):
        parse_schedule_days("3,0,7")


def test_settings_accept_schedule_string():
    settings = Settings(dunning_retry_schedule_days="2,4")

    assert settings.dunning_retry_schedule_days == (2, 4)


def test_settings_reject_negative_reminder_days():
    with pytest.raises(ValueError):
        Settings(dunning_reminder_days=-1)


def test_settings_reject_negative_event_stall_minutes():
    with pytest.raises(ValueError):
        Settings(event_stall_minutes=-5)
