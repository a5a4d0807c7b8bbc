from zoneinfo import ZoneInfo

import pytest

from jobwarden.errors import InvalidScheduleError, InvalidTimezoneError
from jobwarden.timezone import get_zoneinfo, is_valid_timezone


def test_get_zoneinfo_default_utc():
    assert get_zoneinfo(timezone=None) == ZoneInfo("UTC")


def test_get_zoneinfo_named():
    assert get_zoneinfo(timezone="Europe/Berlin") == ZoneInfo("Europe/Berlin")


def test_get_zoneinfo_unknown_raises():
    with pytest.raises(InvalidTimezoneError) as exc_info:
        get_zoneinfo(timezone="Mars/Olympus_Mons")
    assert exc_info.value.code == "INVALID_TIMEZONE"


def test_invalid_timezone_is_schedule_error():
    with pytest.raises(InvalidScheduleError):
        get_zoneinfo(timezone="Not/AZone")


def test_is_valid_timezone():
    assert is_valid_timezone(timezone="America/New_York") is True
    assert is_valid_timezone(timezone="UTC") is True
    assert is_valid_timezone(timezone="Nowhere/Special") is False
