"""Weekly payout cadence: the next payout instant is computed here, never hidden in a timer."""
import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from common.settings import settings

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@dataclass(frozen=True)
class WeeklyCadence:
    weekday: int = 4  # Monday=0 ... Sunday=6
    hour: int = 8
    minute: int = 0
    timezone: str = "America/New_York"

    def __post_init__(self):
        if not 0 <= self.weekday <= 6:
            raise ValueError(f"weekday must be 0-6, got {self.weekday}")
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"invalid payout time {self.hour}:{self.minute}")
        ZoneInfo(self.timezone)  # unknown zones fail here, not at the first tick

    @classmethod
    def from_settings(cls) -> "WeeklyCadence":
        return cls(
            weekday=settings.payout_weekday,
            hour=settings.payout_hour,
            minute=settings.payout_minute,
            timezone=settings.payout_timezone,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def next_after(self, moment: datetime) -> datetime:
        """First matching wall-clock instant strictly after `moment`, in the cadence timezone."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = moment.astimezone(self.tz)
        days_ahead = (self.weekday - local.weekday()) % 7
        candidate = datetime(local.year, local.month, local.day, self.hour, self.minute,
                             tzinfo=self.tz) + timedelta(days=days_ahead)
        if candidate <= local:
            candidate += timedelta(days=7)
        return candidate

    def describe(self) -> str:
        return f"Every {calendar.day_name[self.weekday]} at {self.hour:02d}:{self.minute:02d}"
