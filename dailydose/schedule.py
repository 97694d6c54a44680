# dailydose/schedule.py
# Schedule calculator: expands medication schedules into the doses expected
# on a calendar day. Pure functions of their arguments; "now" is never read
# except by calculate_todays_doses() to pick the date.

import re
import logging
from datetime import date, datetime, time
from typing import Iterable, List, Optional, Sequence, Union

from .models import Dose, DoseStatus, MedicationSchedule

logger = logging.getLogger(__name__)

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")

DayLike = Union[date, datetime]


class InvalidScheduleError(ValueError):
    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid schedule")


def _as_date(value: DayLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def parse_time_of_day(value: str) -> time:
    """Parse a 24-hour "HH:MM" (or "H:MM") label into a time."""
    if not isinstance(value, str):
        raise ValueError(f"time of day must be a string, got {type(value).__name__}")
    m = _HHMM.match(value.strip())
    if not m:
        raise ValueError(f"not an HH:MM time: {value!r}")
    h, mi = int(m.group(1)), int(m.group(2))
    if h > 23 or mi > 59:
        raise ValueError(f"time out of range: {value!r}")
    return time(hour=h, minute=mi)


def normalize_times(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    for v in values or []:
        try:
            t = parse_time_of_day(v)
        except ValueError:
            continue
        label = f"{t.hour:02d}:{t.minute:02d}"
        if label not in out:
            out.append(label)
    out.sort()
    return out


def is_active_on(schedule: MedicationSchedule, day: DayLike) -> bool:
    d = _as_date(day)
    if not schedule.is_active:
        return False
    if d < _as_date(schedule.start_date):
        return False
    if schedule.is_ongoing or schedule.end_date is None:
        return True
    return d <= _as_date(schedule.end_date)


def dose_time_for(day: DayLike, label: str) -> datetime:
    return datetime.combine(_as_date(day), parse_time_of_day(label))


def validate_schedule(schedule: MedicationSchedule) -> List[str]:
    problems: List[str] = []
    if not (schedule.name or "").strip():
        problems.append("name is required")
    if not schedule.specific_times:
        problems.append("at least one time is required")
    for t in schedule.specific_times:
        try:
            parse_time_of_day(t)
        except ValueError:
            problems.append(f"invalid time {t!r}")
    if (not schedule.is_ongoing and schedule.end_date is not None
            and _as_date(schedule.end_date) < _as_date(schedule.start_date)):
        problems.append("end date is before start date")
    return problems


def ensure_valid(schedule: MedicationSchedule) -> MedicationSchedule:
    problems = validate_schedule(schedule)
    if problems:
        raise InvalidScheduleError(problems)
    return schedule


def doses_for_schedule(schedule: MedicationSchedule, user_id: str, day: DayLike) -> List[Dose]:
    """Doses for one schedule on one day, in specific_times order.

    Malformed time labels are skipped; the schedule's other times still count.
    Does not check whether the schedule is active on the day.
    """
    doses = []
    for label in schedule.specific_times:
        try:
            when = dose_time_for(day, label)
        except ValueError:
            logger.debug("skipping malformed time %r for medication %s", label, schedule.id)
            continue
        doses.append(Dose(
            medication_id=schedule.id or "",
            user_id=user_id,
            dose_time=when,
            scheduled_time=label,
            status=DoseStatus.UPCOMING,
        ))
    return doses


def calculate_doses_for_date(schedules: Sequence[MedicationSchedule], user_id: str,
                             day: DayLike) -> List[Dose]:
    doses: List[Dose] = []
    for s in schedules or []:
        if is_active_on(s, day):
            doses.extend(doses_for_schedule(s, user_id, day))
    # sorted() is stable: equal times keep schedule-then-entry order
    return sorted(doses, key=lambda d: d.dose_time)


def calculate_todays_doses(schedules: Sequence[MedicationSchedule], user_id: str,
                           today: Optional[date] = None) -> List[Dose]:
    return calculate_doses_for_date(schedules, user_id, today or date.today())
