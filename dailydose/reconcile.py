# dailydose/reconcile.py
# Status reconciler: merges calculated doses with the dose log and assigns
# the final status shown on the home and history screens.

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import Dose, DoseStatus, EnrichedDose, MedicationSchedule

DUE_WINDOW = timedelta(minutes=30)

# Unlogged doses on a day other than today: past days are MISSED, future days
# stay UPCOMING. Set to True to mark future days MISSED as well.
MARK_FUTURE_UNLOGGED_MISSED = False

PENDING_STATUSES = (DoseStatus.UPCOMING, DoseStatus.DUE)


def time_status(dose_time: datetime, reference_time: datetime) -> DoseStatus:
    delta = dose_time - reference_time
    if delta > DUE_WINDOW:
        return DoseStatus.UPCOMING
    if delta >= -DUE_WINDOW:
        return DoseStatus.DUE
    return DoseStatus.MISSED


def _index_logged(logged: Optional[Iterable[Dose]]) -> Dict[Tuple[str, str], Dose]:
    index: Dict[Tuple[str, str], Dose] = {}
    for entry in logged or []:
        # duplicates: first one wins
        index.setdefault(entry.slot, entry)
    return index


def _unlogged_status(dose: Dose, reference_time: datetime, is_today: bool) -> DoseStatus:
    if is_today:
        return time_status(dose.dose_time, reference_time)
    if dose.dose_time.date() < reference_time.date():
        return DoseStatus.MISSED
    return DoseStatus.MISSED if MARK_FUTURE_UNLOGGED_MISSED else DoseStatus.UPCOMING


def reconcile(calculated: Sequence[Dose], logged: Optional[Iterable[Dose]],
              reference_time: datetime, is_target_date_today: bool) -> List[Dose]:
    """Final dose list for one day.

    A log entry matching (medication_id, scheduled_time) replaces the
    calculated dose outright; the log is authoritative. Everything else gets
    a status from the clock: the 30 minute due window for today, MISSED for
    past days and UPCOMING for future days.
    """
    index = _index_logged(logged)
    out = []
    for dose in calculated:
        entry = index.get(dose.slot)
        if entry is not None:
            out.append(entry)
        else:
            out.append(dose.with_changes(
                status=_unlogged_status(dose, reference_time, is_target_date_today)))
    return out


def enrich(instances: Sequence[Dose], schedules: Sequence[MedicationSchedule]) -> List[EnrichedDose]:
    by_id: Dict[str, MedicationSchedule] = {}
    for s in schedules or []:
        if s.id is not None:
            by_id.setdefault(s.id, s)
    return [EnrichedDose.from_dose(d, by_id.get(d.medication_id)) for d in instances]


def mark_dose_status(instance: Dose, status: DoseStatus, now: Optional[datetime] = None,
                     notes: Optional[str] = None) -> Dose:
    """Prepare (not persist) a dose-log entry recording an explicit status."""
    ts = now or datetime.now()
    return Dose(
        medication_id=instance.medication_id,
        user_id=instance.user_id,
        dose_time=instance.dose_time,
        scheduled_time=instance.scheduled_time,
        status=status,
        taken_at=ts if status == DoseStatus.TAKEN else None,
        notes=notes,
        created_at=ts,
        updated_at=ts,
    )


def mark_dose_as_taken(instance: Dose, now: Optional[datetime] = None) -> Dose:
    return mark_dose_status(instance, DoseStatus.TAKEN, now=now)


@dataclass(frozen=True)
class DoseSummary:
    taken: int = 0
    missed: int = 0
    skipped: int = 0
    pending: int = 0
    total: int = 0

    @property
    def adherence(self) -> Optional[float]:
        resolved = self.taken + self.missed + self.skipped
        if not resolved:
            return None
        return round(self.taken / resolved, 4)


def summarize(doses: Iterable) -> DoseSummary:
    taken = missed = skipped = pending = total = 0
    for d in doses:
        total += 1
        if d.status == DoseStatus.TAKEN:
            taken += 1
        elif d.status == DoseStatus.MISSED:
            missed += 1
        elif d.status == DoseStatus.SKIPPED:
            skipped += 1
        elif d.status in PENDING_STATUSES:
            pending += 1
    return DoseSummary(taken=taken, missed=missed, skipped=skipped, pending=pending, total=total)
