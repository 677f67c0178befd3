"""Duty window resolution.

A team member's duty window is a pair of wall-clock times of day. The
check is re-evaluated every time an alert is about to be sent, never
cached. Which clock "now" is read from is controlled by
``settings.duty_timezone``:

- ``""``: server local time
- ``"user"``: the team member's own timezone (server time if unset or unknown)
- anything else: an IANA zone name applied to every member
"""

import zoneinfo
from datetime import datetime, time

from alerting.config import settings
from alerting.logging_config import get_logger

logger = get_logger(__name__)

USER_TIMEZONE = "user"


def parse_time_of_day(value: time | datetime | str | None) -> time | None:
    """Normalize a duty bound to a ``time`` (hour and minute only).

    Accepts ``time``/``datetime`` objects and ``"HH:MM"`` or
    ``"HH:MM:SS"`` strings. Empty values return None.

    Raises:
        ValueError: If a string cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return time(value.hour, value.minute)
    if isinstance(value, time):
        return time(value.hour, value.minute)
    parsed = time.fromisoformat(value.strip())
    return time(parsed.hour, parsed.minute)


def _load_zone(name: str | None) -> zoneinfo.ZoneInfo | None:
    if not name:
        return None
    try:
        return zoneinfo.ZoneInfo(name)
    except (KeyError, ValueError, zoneinfo.ZoneInfoNotFoundError):
        logger.warning("Unknown duty timezone, using server time", timezone=name)
        return None


def duty_clock(user_timezone: str | None = None) -> time:
    """Current time of day on the configured duty clock.

    Args:
        user_timezone: The team member's IANA timezone, consulted only
            when ``settings.duty_timezone`` is ``"user"``.

    Returns:
        Hour and minute of "now".
    """
    mode = settings.duty_timezone
    if mode == USER_TIMEZONE:
        zone = _load_zone(user_timezone)
    else:
        zone = _load_zone(mode)

    now = datetime.now(zone) if zone is not None else datetime.now()
    return time(now.hour, now.minute)


def is_on_duty(
    start_time: time | datetime | str | None,
    end_time: time | datetime | str | None,
    now: time | datetime | None = None,
    user_timezone: str | None = None,
) -> bool:
    """Check whether ``now`` falls inside the ``[start, end)`` duty window.

    A missing bound means the member is always on duty, and so does
    ``start == end`` (24h duty). Windows with ``start > end`` wrap past
    midnight, e.g. 22:00-06:00.

    Args:
        start_time: Start of the duty window.
        end_time: End of the duty window (exclusive).
        now: Time of day to check; defaults to :func:`duty_clock`.
        user_timezone: Member timezone passed through to :func:`duty_clock`.

    Returns:
        True if the member should be alerted now.
    """
    start = parse_time_of_day(start_time)
    end = parse_time_of_day(end_time)

    if start is None or end is None:
        return True
    if start == end:
        return True

    current = parse_time_of_day(now) if now is not None else duty_clock(user_timezone)

    if start < end:
        return start <= current < end
    return current >= start or current < end
