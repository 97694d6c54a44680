# dailydose/board.py
# Screen-level view of one day's doses (home = today, history = any date).
# Schedules and logs are fetched independently; if either fetch fails the
# board is still built from whatever did load.

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from .models import Dose, DoseStatus, EnrichedDose, MedicationSchedule
from .reconcile import DoseSummary, enrich, mark_dose_as_taken, mark_dose_status, reconcile, summarize
from .repository import AuthSession, DoseLogRepository, MedicationRepository, RepositoryError, Result
from .schedule import calculate_doses_for_date, is_active_on

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "User not authenticated"


@dataclass(frozen=True)
class DayBoard:
    day: date
    doses: Tuple[EnrichedDose, ...] = ()
    schedules: Tuple[MedicationSchedule, ...] = ()
    summary: DoseSummary = DoseSummary()
    errors: Tuple[str, ...] = field(default_factory=tuple)
    user_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.errors


def shift_day(day: date, days: int) -> date:
    return day + timedelta(days=days)


class DoseBoard:
    def __init__(self, medications: MedicationRepository, dose_log: DoseLogRepository,
                 session: AuthSession, clock: Callable[[], datetime] = datetime.now):
        self.medications = medications
        self.dose_log = dose_log
        self.session = session
        self.clock = clock

    def _fetch_schedules(self, user_id: str, day: date, errors: List[str]) -> List[MedicationSchedule]:
        try:
            meds = self.medications.get_medications_for_user(user_id)
        except RepositoryError as e:
            logger.exception("loading medications failed")
            errors.append(f"Failed to load medications: {e}")
            return []
        return [m for m in meds if is_active_on(m, day)]

    def _fetch_logs(self, user_id: str, day: date, errors: List[str]) -> List[Dose]:
        try:
            return self.dose_log.get_logged_doses_for_day(user_id, day)
        except RepositoryError as e:
            logger.exception("loading dose log failed")
            errors.append(f"Failed to load dose log: {e}")
            return []

    def load_day(self, day: Optional[date] = None) -> DayBoard:
        now = self.clock()
        day = day or now.date()
        user_id = self.session.current_user_id() if self.session.is_authenticated() else None
        if not user_id:
            return DayBoard(day=day, errors=(NOT_AUTHENTICATED,))

        errors: List[str] = []
        schedules = self._fetch_schedules(user_id, day, errors)
        logged = self._fetch_logs(user_id, day, errors)

        calculated = calculate_doses_for_date(schedules, user_id, day)
        resolved = reconcile(calculated, logged, now, is_target_date_today=(day == now.date()))
        doses = enrich(resolved, schedules)
        return DayBoard(
            day=day,
            doses=tuple(doses),
            schedules=tuple(schedules),
            summary=summarize(doses),
            errors=tuple(errors),
            user_id=user_id,
        )

    def load_today(self) -> DayBoard:
        return self.load_day(None)

    def _record(self, dose, status: DoseStatus, notes: Optional[str] = None) -> Result:
        if isinstance(dose, EnrichedDose):
            dose = dose.to_dose()
        if not self.session.is_authenticated():
            return Result.failure(NOT_AUTHENTICATED)
        if dose.id:
            # already logged: the first entry for a slot is the one shown
            result = self.dose_log.update_dose_status(dose.id, status)
        elif status == DoseStatus.TAKEN:
            result = self.dose_log.append_log_entry(mark_dose_as_taken(dose, now=self.clock()))
        else:
            result = self.dose_log.append_log_entry(
                mark_dose_status(dose, status, now=self.clock(), notes=notes))
        if not result.is_success:
            logger.error("dose log write failed: %s", result.error)
        return result

    def mark_taken(self, dose) -> Result:
        return self._record(dose, DoseStatus.TAKEN)

    def mark_skipped(self, dose, notes: Optional[str] = None) -> Result:
        return self._record(dose, DoseStatus.SKIPPED, notes=notes)
