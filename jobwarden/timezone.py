import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from jobwarden.errors import InvalidTimezoneError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


def get_zoneinfo(*, timezone: str | None) -> ZoneInfo:
    """Return a ZoneInfo for the given IANA name, UTC when None.

    Raises InvalidTimezoneError for names the tz database does not know.
    """
    if timezone is None:
        return ZoneInfo(DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Invalid timezone {timezone!r}")
        raise InvalidTimezoneError(f"Unknown timezone: {timezone}") from e


def is_valid_timezone(*, timezone: str) -> bool:
    """Check if a timezone name resolves in the tz database."""
    try:
        get_zoneinfo(timezone=timezone)
        return True
    except InvalidTimezoneError:
        return False
