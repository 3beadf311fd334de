"""Appointment slot value models."""

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TimeOfDay(str, Enum):
    NO_PREFERENCE = "no_preference"
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    EARLIEST_AVAILABLE = "earliest_available"


class UrgencyLevel(str, Enum):
    ROUTINE = "routine"
    SOON_PREFERRED = "soon_preferred"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class PreferredSchedule(BaseModel):
    """Preferred appointment timing with flexible date handling."""

    preferred_date: Optional[date] = None
    time_of_day: TimeOfDay = TimeOfDay.NO_PREFERENCE
    range_start: Optional[date] = None
    range_end: Optional[date] = None
    days_of_week: list[str] = Field(default_factory=list)
    urgency: UrgencyLevel = UrgencyLevel.ROUTINE

    def earliest_date(self) -> Optional[date]:
        candidates = [d for d in (self.preferred_date, self.range_start) if d is not None]
        return min(candidates) if candidates else None

    def describe(self) -> str:
        parts: list[str] = []
        if self.preferred_date:
            parts.append(self.preferred_date.strftime("%A %B %d"))
        elif self.range_start and self.range_end:
            parts.append(
                f"between {self.range_start.strftime('%B %d')} and {self.range_end.strftime('%B %d')}"
            )
        if self.time_of_day != TimeOfDay.NO_PREFERENCE:
            parts.append(self.time_of_day.value.replace("_", " "))
        if self.days_of_week:
            parts.append("on " + ", ".join(self.days_of_week))
        if self.urgency != UrgencyLevel.ROUTINE:
            parts.append(f"({self.urgency.value.replace('_', ' ')})")
        return " ".join(parts) or "no preference"


class HandoffPayload(BaseModel):
    """Collected appointment details handed to the scheduling system."""

    call_id: str
    slots: dict[str, str]
    confidence_score: float
    warnings: list[str] = Field(default_factory=list)
