from datetime import datetime, timedelta
import pytz
from app.config import settings

# Campus-local timezone (defaults to IST)
LOCAL_TZ = pytz.timezone(settings.app_timezone)

def now_local() -> datetime:
    """Get current datetime in the campus timezone."""
    return datetime.now(LOCAL_TZ)


class SystemClock:
    """Wall clock used in production."""

    def now(self) -> datetime:
        return now_local()


class FixedClock:
    """Clock frozen at a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = LOCAL_TZ.localize(instant)
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def advance(self, **kwargs) -> datetime:
        self.instant = self.instant + timedelta(**kwargs)
        return self.instant


system_clock = SystemClock()

def get_clock():
    """FastAPI dependency; tests override it with a FixedClock."""
    return system_clock
