# dailydose/forms.py
# Turns the add/edit medication dialog's raw text into a MedicationSchedule.
# Kept free of Kivy so the parsing rules can be tested on their own.

from datetime import date
from typing import Mapping, Optional, Sequence

from .models import (
    MealTiming, MedicationCategory, MedicationForm, MedicationSchedule, ReminderType,
    decode_enum, decode_optional_enum,
)
from .schedule import normalize_times

FORM_FIELDS = (
    "name", "strength", "dosage", "form", "meal_timing", "start_date", "end_date",
    "reminder_type", "category", "prescribed_by", "refill_count", "notes",
)


def _text(fields: Mapping[str, str], name: str) -> str:
    return (fields.get(name) or "").strip()


def _enum_text(value: str) -> str:
    # "before meal" / "Before-Meal" -> BEFORE_MEAL
    return value.replace(" ", "_").replace("-", "_")


def form_values(schedule: Optional[MedicationSchedule]) -> dict:
    """Initial text for each dialog field."""
    if schedule is None:
        return {"form": "tablet", "start_date": date.today().isoformat(), "reminder_type": "default"}
    return {
        "name": schedule.name,
        "strength": schedule.strength,
        "dosage": schedule.dosage,
        "form": schedule.form.name.lower(),
        "meal_timing": schedule.meal_timing.name.lower() if schedule.meal_timing else "",
        "start_date": schedule.start_date.isoformat(),
        "end_date": schedule.end_date.isoformat() if schedule.end_date and not schedule.is_ongoing else "",
        "reminder_type": schedule.reminder_type.name.lower(),
        "category": schedule.category.name.lower() if schedule.category else "",
        "prescribed_by": schedule.prescribed_by or "",
        "refill_count": "" if schedule.refill_count is None else str(schedule.refill_count),
        "notes": schedule.notes or "",
    }


def medication_from_form(fields: Mapping[str, str], times: Sequence[str], user_id: str,
                         reminders_enabled: bool = True,
                         existing: Optional[MedicationSchedule] = None) -> MedicationSchedule:
    """Build the schedule to save.

    Raises ValueError (RecordDecodeError for unknown choices) on bad input;
    a blank end date means ongoing. Validation of the result is left to the
    store.
    """
    end_text = _text(fields, "end_date")
    refill_text = _text(fields, "refill_count")
    refill = int(refill_text) if refill_text else None
    if refill is not None and refill < 0:
        raise ValueError("refill count cannot be negative")

    values = dict(
        user_id=user_id,
        name=_text(fields, "name"),
        strength=_text(fields, "strength"),
        dosage=_text(fields, "dosage"),
        form=decode_enum(MedicationForm, _enum_text(_text(fields, "form")) or MedicationForm.OTHER.name),
        meal_timing=decode_optional_enum(MealTiming, _enum_text(_text(fields, "meal_timing"))),
        start_date=date.fromisoformat(_text(fields, "start_date")),
        end_date=date.fromisoformat(end_text) if end_text else None,
        is_ongoing=not end_text,
        specific_times=tuple(normalize_times(times)),
        reminders_enabled=bool(reminders_enabled),
        reminder_type=decode_enum(ReminderType,
                                  _enum_text(_text(fields, "reminder_type")) or ReminderType.DEFAULT.name),
        category=decode_optional_enum(MedicationCategory, _enum_text(_text(fields, "category"))),
        prescribed_by=_text(fields, "prescribed_by") or None,
        refill_count=refill,
        notes=_text(fields, "notes") or None,
    )
    if existing is not None:
        return existing.with_changes(**values)
    return MedicationSchedule(**values)
