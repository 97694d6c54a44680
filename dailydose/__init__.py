# dailydose/__init__.py
# Medication reminders: dose scheduling, status reconciliation and an
# encrypted on-device store.

from .models import (
    Dose, DoseInstance, DoseLogEntry, DoseStatus, EnrichedDose, MealTiming,
    MedicationCategory, MedicationForm, MedicationSchedule, RecordDecodeError, ReminderType,
)
from .schedule import (
    InvalidScheduleError, calculate_doses_for_date, calculate_todays_doses, is_active_on,
)
from .reconcile import DoseSummary, enrich, mark_dose_as_taken, mark_dose_status, summarize

__version__ = "1.0.0"
