"""
Datetime helper utilities to ensure consistent timezone handling across the application.

Escrow records store timezone-naive UTC datetimes (DateTime(timezone=False)).
These helpers keep timezone-aware values from leaking into those columns and
derive the pricing time bucket used by the fee engine.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class TimeOfDay(Enum):
    MORNING = "morning"      # 06:00 - 12:00
    AFTERNOON = "afternoon"  # 12:00 - 18:00
    EVENING = "evening"      # 18:00 - 22:00
    NIGHT = "night"          # 22:00 - 06:00


class DayType(Enum):
    WEEKDAY = "weekday"
    WEEKEND = "weekend"


@dataclass(frozen=True)
class TimeBucket:
    """Pricing bucket derived from a wall-clock time"""
    time_of_day: TimeOfDay
    day_type: DayType

    @classmethod
    def from_datetime(cls, moment: datetime) -> "TimeBucket":
        hour = moment.hour
        if hour < 6:
            time_of_day = TimeOfDay.NIGHT
        elif hour < 12:
            time_of_day = TimeOfDay.MORNING
        elif hour < 18:
            time_of_day = TimeOfDay.AFTERNOON
        elif hour < 22:
            time_of_day = TimeOfDay.EVENING
        else:
            time_of_day = TimeOfDay.NIGHT

        # Saturday=5, Sunday=6
        day_type = DayType.WEEKEND if moment.weekday() >= 5 else DayType.WEEKDAY
        return cls(time_of_day=time_of_day, day_type=day_type)


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime - the clock used for escrow records"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
