from __future__ import annotations

import json
import logging
from datetime import datetime, time
from typing import Any

from pydantic import BaseModel, field_validator

from printfleet.models import NotificationRecipient, Site

LOGGER = logging.getLogger(__name__)

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


def parse_weekday(value: Any) -> int:
    if isinstance(value, int):
        if not 0 <= value <= 6:
            raise ValueError(f"weekday must be 0..6, got {value}")
        return value
    name = str(value).strip().lower()
    for weekday, number in WEEKDAYS.items():
        if name and weekday.startswith(name) and len(name) >= 3:
            return number
    raise ValueError(f"unknown weekday: {value}")


def in_window(moment: time, start: time, end: time) -> bool:
    """True when ``moment`` falls inside start..end, wrapping past midnight when start > end."""
    if start <= end:
        return start <= moment <= end
    return moment >= start or moment <= end


def local_time(moment: datetime) -> datetime:
    return moment.astimezone() if moment.tzinfo else moment


class QuietHoursRange(BaseModel):
    start: time
    end: time
    days: list[int] = []
    enabled: bool = True

    @field_validator("days", mode="before")
    @classmethod
    def coerce_days(cls, value: Any) -> list[int]:
        if value is None:
            return []
        return [parse_weekday(day) for day in value]

    def contains(self, moment: datetime) -> bool:
        if not self.enabled:
            return False
        if self.days and moment.weekday() not in self.days:
            return False
        return in_window(moment.time(), self.start, self.end)


class QuietHoursConfig(BaseModel):
    ranges: list[QuietHoursRange] = []

    @classmethod
    def parse(cls, raw: str | None) -> "QuietHoursConfig":
        """Accept ``{"ranges": [...]}`` or a bare list of ranges."""
        if not raw or not raw.strip():
            return cls()
        data = json.loads(raw)
        if isinstance(data, list):
            data = {"ranges": data}
        return cls.model_validate(data)

    def is_quiet(self, moment: datetime) -> bool:
        return any(window.contains(moment) for window in self.ranges)


def is_quiet(recipient: NotificationRecipient, site: Site | None, moment: datetime) -> bool:
    """Whether a notification to ``recipient`` must be held back at ``moment``.

    Recipient settings win over the site configuration. A site whose quiet
    hours cannot be parsed never blocks delivery.
    """
    now = local_time(moment)
    if recipient.active_days and now.weekday() not in recipient.active_days:
        return True

    if recipient.quiet_hours_start is not None and recipient.quiet_hours_end is not None:
        return in_window(now.time(), recipient.quiet_hours_start, recipient.quiet_hours_end)

    if site is not None and site.quiet_hours:
        try:
            config = QuietHoursConfig.parse(site.quiet_hours)
        except ValueError as exc:
            LOGGER.warning("Failed to parse quiet hours configuration for site %s: %s", site.id, exc)
            return False
        return config.is_quiet(now)

    return False
