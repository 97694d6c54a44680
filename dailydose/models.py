# dailydose/models.py
# Value types shared by the scheduling engine, the local store and the screens.
#
# Everything here is immutable; "updates" go through with_changes(), which
# returns a new snapshot (dataclasses.replace).

import json
import dataclasses
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type, TypeVar


class RecordDecodeError(ValueError):
    """A stored value could not be decoded into its domain type."""


# -------------------------
# Closed enumerations (stored by name)
# -------------------------
class DoseStatus(str, Enum):
    UPCOMING = "UPCOMING"
    DUE = "DUE"
    TAKEN = "TAKEN"
    MISSED = "MISSED"
    SKIPPED = "SKIPPED"


class MedicationForm(str, Enum):
    TABLET = "TABLET"
    CAPSULE = "CAPSULE"
    SYRUP = "SYRUP"
    INJECTION = "INJECTION"
    CREAM = "CREAM"
    DROPS = "DROPS"
    PATCH = "PATCH"
    OTHER = "OTHER"


class MealTiming(str, Enum):
    BEFORE_MEAL = "BEFORE_MEAL"
    AFTER_MEAL = "AFTER_MEAL"
    WITH_MEAL = "WITH_MEAL"
    ON_EMPTY_STOMACH = "ON_EMPTY_STOMACH"
    ANYTIME = "ANYTIME"


class ReminderType(str, Enum):
    DEFAULT = "DEFAULT"
    SILENT = "SILENT"
    LOUD = "LOUD"


class MedicationCategory(str, Enum):
    DIABETES = "DIABETES"
    HEART = "HEART"
    BLOOD_PRESSURE = "BLOOD_PRESSURE"
    PAIN_RELIEF = "PAIN_RELIEF"
    VITAMINS = "VITAMINS"
    ANTIBIOTICS = "ANTIBIOTICS"
    MENTAL_HEALTH = "MENTAL_HEALTH"
    RESPIRATORY = "RESPIRATORY"
    DIGESTIVE = "DIGESTIVE"
    GENERAL = "GENERAL"


E = TypeVar("E", bound=Enum)


def decode_enum(enum_cls: Type[E], value: Any) -> E:
    """Decode a stored enum name; unknown names fail closed."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls[value.strip().upper()]
        except KeyError:
            pass
    raise RecordDecodeError(f"unknown {enum_cls.__name__} value: {value!r}")


def decode_optional_enum(enum_cls: Type[E], value: Any) -> Optional[E]:
    if value is None or value == "":
        return None
    return decode_enum(enum_cls, value)


# -------------------------
# Domain records
# -------------------------
@dataclass(frozen=True)
class MedicationSchedule:
    user_id: str
    name: str
    start_date: date
    specific_times: Tuple[str, ...]
    id: Optional[str] = None
    end_date: Optional[date] = None
    is_ongoing: bool = False
    is_active: bool = True
    form: MedicationForm = MedicationForm.TABLET
    strength: str = ""
    dosage: str = ""
    meal_timing: Optional[MealTiming] = None
    reminders_enabled: bool = True
    reminder_type: ReminderType = ReminderType.DEFAULT
    prescribed_by: Optional[str] = None
    notes: Optional[str] = None
    refill_count: Optional[int] = None
    category: Optional[MedicationCategory] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        # lists are accepted for convenience but stored as a tuple
        if not isinstance(self.specific_times, tuple):
            object.__setattr__(self, "specific_times", tuple(self.specific_times or ()))

    @property
    def times_per_day(self) -> int:
        return len(self.specific_times)

    def with_changes(self, **changes) -> "MedicationSchedule":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class Dose:
    """One expected administration on a given day, or a logged record of one.

    Calculated instances and persisted log entries share this shape; a log
    entry is simply a Dose that has been written to the dose log.
    """
    medication_id: str
    user_id: str
    dose_time: datetime
    scheduled_time: str
    status: DoseStatus = DoseStatus.UPCOMING
    id: Optional[str] = None
    taken_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def slot(self) -> Tuple[str, str]:
        return (self.medication_id, self.scheduled_time)

    def with_changes(self, **changes) -> "Dose":
        return dataclasses.replace(self, **changes)


DoseInstance = Dose
DoseLogEntry = Dose

UNKNOWN_MEDICATION = "Unknown Medication"


@dataclass(frozen=True)
class EnrichedDose:
    medication_id: str
    user_id: str
    dose_time: datetime
    scheduled_time: str
    status: DoseStatus
    medication_name: str
    medication_strength: str
    medication_form: str
    medication_dosage: str
    meal_timing: Optional[str] = None
    id: Optional[str] = None
    taken_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dose(cls, dose: Dose, schedule: Optional[MedicationSchedule]) -> "EnrichedDose":
        if schedule is None:
            name, strength, form, dosage, meal = UNKNOWN_MEDICATION, "", "", "", None
        else:
            name = schedule.name
            strength = schedule.strength or ""
            form = schedule.form.name if schedule.form else ""
            dosage = schedule.dosage or ""
            meal = schedule.meal_timing.name if schedule.meal_timing else None
        return cls(
            medication_id=dose.medication_id,
            user_id=dose.user_id,
            dose_time=dose.dose_time,
            scheduled_time=dose.scheduled_time,
            status=dose.status,
            medication_name=name,
            medication_strength=strength,
            medication_form=form,
            medication_dosage=dosage,
            meal_timing=meal,
            id=dose.id,
            taken_at=dose.taken_at,
            notes=dose.notes,
            created_at=dose.created_at,
            updated_at=dose.updated_at,
        )

    def to_dose(self) -> Dose:
        return Dose(
            medication_id=self.medication_id,
            user_id=self.user_id,
            dose_time=self.dose_time,
            scheduled_time=self.scheduled_time,
            status=self.status,
            id=self.id,
            taken_at=self.taken_at,
            notes=self.notes,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


# -------------------------
# Row codecs (local store)
# -------------------------
def _encode_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _encode_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _decode_date(value: Any, field: str) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RecordDecodeError(f"bad date in {field}: {value!r}") from None


def _decode_ts(value: Any, field: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise RecordDecodeError(f"bad timestamp in {field}: {value!r}") from None


def schedule_to_row(s: MedicationSchedule) -> Dict[str, Any]:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "name": s.name,
        "form": s.form.name,
        "strength": s.strength,
        "dosage": s.dosage,
        "start_date": _encode_date(s.start_date),
        "end_date": _encode_date(s.end_date),
        "is_ongoing": int(bool(s.is_ongoing)),
        "specific_times": json.dumps(list(s.specific_times)),
        "meal_timing": s.meal_timing.name if s.meal_timing else None,
        "reminders_enabled": int(bool(s.reminders_enabled)),
        "reminder_type": s.reminder_type.name,
        "prescribed_by": s.prescribed_by,
        "notes": s.notes,
        "refill_count": s.refill_count,
        "category": s.category.name if s.category else None,
        "is_active": int(bool(s.is_active)),
        "created_at": _encode_ts(s.created_at),
        "updated_at": _encode_ts(s.updated_at),
    }


def schedule_from_row(row: Dict[str, Any]) -> MedicationSchedule:
    try:
        times = json.loads(row.get("specific_times") or "[]")
    except (TypeError, ValueError):
        raise RecordDecodeError(f"bad specific_times: {row.get('specific_times')!r}") from None
    if not isinstance(times, list):
        raise RecordDecodeError("specific_times must be a JSON list")

    start = _decode_date(row.get("start_date"), "start_date")
    if start is None:
        raise RecordDecodeError("start_date is required")

    refill = row.get("refill_count")
    return MedicationSchedule(
        id=row.get("id"),
        user_id=row.get("user_id") or "",
        name=row.get("name") or "",
        form=decode_enum(MedicationForm, row.get("form") or MedicationForm.OTHER.name),
        strength=row.get("strength") or "",
        dosage=row.get("dosage") or "",
        start_date=start,
        end_date=_decode_date(row.get("end_date"), "end_date"),
        is_ongoing=bool(row.get("is_ongoing")),
        specific_times=tuple(str(t) for t in times),
        meal_timing=decode_optional_enum(MealTiming, row.get("meal_timing")),
        reminders_enabled=bool(row.get("reminders_enabled", 1)),
        reminder_type=decode_enum(ReminderType, row.get("reminder_type") or ReminderType.DEFAULT.name),
        prescribed_by=row.get("prescribed_by"),
        notes=row.get("notes"),
        refill_count=int(refill) if refill is not None else None,
        category=decode_optional_enum(MedicationCategory, row.get("category")),
        is_active=bool(row.get("is_active", 1)),
        created_at=_decode_ts(row.get("created_at"), "created_at"),
        updated_at=_decode_ts(row.get("updated_at"), "updated_at"),
    )


def dose_to_row(d: Dose) -> Dict[str, Any]:
    return {
        "id": d.id,
        "medication_id": d.medication_id,
        "user_id": d.user_id,
        "dose_time": _encode_ts(d.dose_time),
        "scheduled_time": d.scheduled_time,
        "status": d.status.name,
        "taken_at": _encode_ts(d.taken_at),
        "notes": d.notes,
        "created_at": _encode_ts(d.created_at),
        "updated_at": _encode_ts(d.updated_at),
    }


def dose_from_row(row: Dict[str, Any]) -> Dose:
    dose_time = _decode_ts(row.get("dose_time"), "dose_time")
    if dose_time is None:
        raise RecordDecodeError("dose_time is required")
    return Dose(
        id=row.get("id"),
        medication_id=row.get("medication_id") or "",
        user_id=row.get("user_id") or "",
        dose_time=dose_time,
        scheduled_time=row.get("scheduled_time") or "",
        status=decode_enum(DoseStatus, row.get("status")),
        taken_at=_decode_ts(row.get("taken_at"), "taken_at"),
        notes=row.get("notes"),
        created_at=_decode_ts(row.get("created_at"), "created_at"),
        updated_at=_decode_ts(row.get("updated_at"), "updated_at"),
    )
