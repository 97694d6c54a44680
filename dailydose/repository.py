# dailydose/repository.py
# Collaborator contracts consumed by the dose board. The local encrypted store
# implements the medication and dose-log sides; a remote backend would too.

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, List, Optional

from .models import Dose, DoseStatus, MedicationSchedule
from .schedule import is_active_on


class RepositoryError(Exception):
    """Storage or backend failure."""


@dataclass(frozen=True)
class Result:
    is_success: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(True, value=value)

    @classmethod
    def failure(cls, error: str) -> "Result":
        return cls(False, error=error)


def day_bounds(day: date):
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


class MedicationRepository(ABC):
    @abstractmethod
    def get_medications_for_user(self, user_id: str) -> List[MedicationSchedule]:
        ...

    @abstractmethod
    def get_medication(self, medication_id: str) -> Optional[MedicationSchedule]:
        ...

    @abstractmethod
    def add_medication(self, schedule: MedicationSchedule) -> MedicationSchedule:
        ...

    @abstractmethod
    def update_medication(self, schedule: MedicationSchedule) -> MedicationSchedule:
        ...

    @abstractmethod
    def delete_medication(self, medication_id: str) -> None:
        ...

    def get_schedules_active_on(self, user_id: str, day: date) -> List[MedicationSchedule]:
        return [s for s in self.get_medications_for_user(user_id) if is_active_on(s, day)]


class DoseLogRepository(ABC):
    @abstractmethod
    def get_logged_doses(self, user_id: str, start: datetime, end: datetime) -> List[Dose]:
        """Log entries with start <= dose_time < end."""

    @abstractmethod
    def get_doses_for_medication(self, medication_id: str) -> List[Dose]:
        ...

    @abstractmethod
    def append_log_entry(self, entry: Dose) -> Result:
        ...

    @abstractmethod
    def update_dose_status(self, dose_id: str, status: DoseStatus) -> Result:
        ...

    def get_logged_doses_for_day(self, user_id: str, day: date) -> List[Dose]:
        start, end = day_bounds(day)
        return self.get_logged_doses(user_id, start, end)


class AuthSession(ABC):
    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        ...

    def is_authenticated(self) -> bool:
        return bool(self.current_user_id())
