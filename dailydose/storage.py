# dailydose/storage.py
# Encrypted SQLite store. The database only exists on disk as AES-GCM
# ciphertext; each operation decrypts into a private temp file, runs its SQL
# and (for writes) seals the result back in place.

import uuid
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import List, Optional

from cryptography.exceptions import InvalidTag

from .crypto import aes_decrypt, aes_encrypt, atomic_write_bytes
from .models import (
    Dose, DoseStatus, MedicationSchedule, RecordDecodeError,
    dose_from_row, dose_to_row, schedule_from_row, schedule_to_row,
)
from .repository import DoseLogRepository, MedicationRepository, RepositoryError, Result
from .schedule import ensure_valid

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS medications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        form TEXT NOT NULL,
        strength TEXT,
        dosage TEXT,
        start_date TEXT NOT NULL,   -- YYYY-MM-DD
        end_date TEXT,
        is_ongoing INTEGER DEFAULT 0,
        specific_times TEXT,        -- JSON list of "HH:MM"
        meal_timing TEXT,
        reminders_enabled INTEGER DEFAULT 1,
        reminder_type TEXT DEFAULT 'DEFAULT',
        prescribed_by TEXT,
        notes TEXT,
        refill_count INTEGER,
        category TEXT,
        is_active INTEGER DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dose_log (
        id TEXT PRIMARY KEY,
        medication_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        dose_time TEXT NOT NULL,    -- ISO timestamp, local time
        scheduled_time TEXT NOT NULL,
        status TEXT NOT NULL,
        taken_at TEXT,
        notes TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_dose_log_user_time ON dose_log (user_id, dose_time)",
    "CREATE INDEX IF NOT EXISTS idx_medications_user ON medications (user_id)",
)

_MED_COLUMNS = tuple(schedule_to_row(MedicationSchedule(
    user_id="", name="", start_date=datetime.min.date(), specific_times=())).keys())
_DOSE_COLUMNS = tuple(dose_to_row(Dose(
    medication_id="", user_id="", dose_time=datetime.min, scheduled_time="")).keys())


def _new_id() -> str:
    return uuid.uuid4().hex


class EncryptedStore(MedicationRepository, DoseLogRepository):
    def __init__(self, key: bytes, db_path: Path, tmp_dir: Path):
        self.key = key
        self.db_path = Path(db_path)
        self.tmp_dir = Path(tmp_dir)
        self._lock = RLock()
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_db()

    def _tmp_path(self, prefix: str) -> Path:
        return self.tmp_dir / f"{prefix}.{uuid.uuid4().hex}.db"

    def _ensure_db(self):
        with self._lock:
            if self.db_path.exists():
                return
            tmp = self._tmp_path("init")
            try:
                conn = sqlite3.connect(str(tmp))
                try:
                    for stmt in SCHEMA:
                        conn.execute(stmt)
                    conn.commit()
                finally:
                    conn.close()
                atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
                logger.info("created encrypted db %s", self.db_path)
            except sqlite3.Error as e:
                raise RepositoryError(f"could not create database: {e}") from e
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _connect(self, write: bool = False):
        """Decrypted connection; sealed back to disk only if write and no error."""
        with self._lock:
            self._ensure_db()
            tmp = self._tmp_path("work")
            try:
                try:
                    atomic_write_bytes(tmp, aes_decrypt(self.db_path.read_bytes(), self.key))
                except InvalidTag as e:
                    raise RepositoryError("database could not be decrypted (wrong key?)") from e
                conn = sqlite3.connect(str(tmp))
                conn.row_factory = sqlite3.Row
                try:
                    yield conn
                    if write:
                        conn.commit()
                except sqlite3.Error as e:
                    raise RepositoryError(str(e)) from e
                except RecordDecodeError as e:
                    raise RepositoryError(f"corrupt record: {e}") from e
                finally:
                    conn.close()
                if write:
                    atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
            finally:
                tmp.unlink(missing_ok=True)

    # -------------------------
    # Medications
    # -------------------------
    def get_medications_for_user(self, user_id: str) -> List[MedicationSchedule]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM medications WHERE user_id=? ORDER BY name, created_at",
                (user_id,)).fetchall()
            return [schedule_from_row(dict(r)) for r in rows]

    def get_medication(self, medication_id: str) -> Optional[MedicationSchedule]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM medications WHERE id=?", (medication_id,)).fetchone()
            return schedule_from_row(dict(row)) if row else None

    def add_medication(self, schedule: MedicationSchedule) -> MedicationSchedule:
        ensure_valid(schedule)
        now = datetime.now()
        saved = schedule.with_changes(
            id=schedule.id or _new_id(),
            created_at=schedule.created_at or now,
            updated_at=now,
        )
        row = schedule_to_row(saved)
        with self._connect(write=True) as conn:
            conn.execute(
                f"INSERT INTO medications ({','.join(_MED_COLUMNS)}) "
                f"VALUES ({','.join('?' * len(_MED_COLUMNS))})",
                [row[c] for c in _MED_COLUMNS])
        logger.info("added medication id=%s name=%s times=%s",
                    saved.id, saved.name, list(saved.specific_times))
        return saved

    def update_medication(self, schedule: MedicationSchedule) -> MedicationSchedule:
        if not schedule.id:
            raise RepositoryError("cannot update a medication without an id")
        ensure_valid(schedule)
        saved = schedule.with_changes(updated_at=datetime.now())
        row = schedule_to_row(saved)
        cols = [c for c in _MED_COLUMNS if c not in ("id", "created_at")]
        with self._connect(write=True) as conn:
            cur = conn.execute(
                f"UPDATE medications SET {','.join(c + '=?' for c in cols)} WHERE id=?",
                [row[c] for c in cols] + [saved.id])
            if cur.rowcount == 0:
                raise RepositoryError(f"no medication with id {saved.id}")
        logger.info("updated medication id=%s times=%s", saved.id, list(saved.specific_times))
        return saved

    def delete_medication(self, medication_id: str) -> None:
        with self._connect(write=True) as conn:
            conn.execute("UPDATE medications SET is_active=0, updated_at=? WHERE id=?",
                         (datetime.now().isoformat(), medication_id))
        logger.info("deactivated medication id=%s", medication_id)

    # -------------------------
    # Dose log
    # -------------------------
    def get_logged_doses(self, user_id: str, start: datetime, end: datetime) -> List[Dose]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM dose_log WHERE user_id=? AND dose_time>=? AND dose_time<? "
                "ORDER BY dose_time, created_at",
                (user_id, start.isoformat(), end.isoformat())).fetchall()
            return [dose_from_row(dict(r)) for r in rows]

    def get_doses_for_medication(self, medication_id: str) -> List[Dose]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM dose_log WHERE medication_id=? ORDER BY dose_time DESC",
                (medication_id,)).fetchall()
            return [dose_from_row(dict(r)) for r in rows]

    def append_log_entry(self, entry: Dose) -> Result:
        now = datetime.now()
        saved = entry.with_changes(
            id=entry.id or _new_id(),
            created_at=entry.created_at or now,
            updated_at=entry.updated_at or now,
        )
        row = dose_to_row(saved)
        try:
            with self._connect(write=True) as conn:
                conn.execute(
                    f"INSERT INTO dose_log ({','.join(_DOSE_COLUMNS)}) "
                    f"VALUES ({','.join('?' * len(_DOSE_COLUMNS))})",
                    [row[c] for c in _DOSE_COLUMNS])
        except RepositoryError as e:
            logger.exception("append dose log failed")
            return Result.failure(str(e))
        logger.info("dose log: med_id=%s %s sched=%s",
                    saved.medication_id, saved.status.name, saved.scheduled_time)
        return Result.success(saved)

    def update_dose_status(self, dose_id: str, status: DoseStatus) -> Result:
        now = datetime.now()
        taken_at = now.isoformat() if status == DoseStatus.TAKEN else None
        try:
            with self._connect(write=True) as conn:
                cur = conn.execute(
                    "UPDATE dose_log SET status=?, taken_at=?, updated_at=? "
                    "WHERE id=?",
                    (status.name, taken_at, now.isoformat(), dose_id))
                if cur.rowcount == 0:
                    return Result.failure(f"no dose log entry with id {dose_id}")
        except RepositoryError as e:
            logger.exception("update dose status failed")
            return Result.failure(str(e))
        return Result.success(dose_id)

    def size_kb(self) -> float:
        return self.db_path.stat().st_size / 1024.0 if self.db_path.exists() else 0.0
