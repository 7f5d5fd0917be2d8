from datetime import date, datetime

import pytz

from medtrack.core.config import settings


class Clock:
    """Wall-clock source for the engine.

    Returns naive datetimes in the user's local zone so they compare directly
    with slot times (which are local wall-clock values) and with what is stored
    in the database.
    """

    def __init__(self, timezone: str = None):
        self.tz = pytz.timezone(timezone or settings.timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()


system_clock = Clock()


def get_clock() -> Clock:
    return system_clock
