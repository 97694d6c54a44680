import tempfile
import unittest
from datetime import date, datetime, time, timedelta
from itertools import islice
from pathlib import Path
from unittest import mock

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dailydose import crypto
from dailydose import reconcile as rec
from dailydose.android import render_android_sources, write_android_sources
from dailydose.board import NOT_AUTHENTICATED, DoseBoard, shift_day
from dailydose.config import Settings
from dailydose.crypto import KeyUnavailableError, aes_decrypt, aes_encrypt, load_or_create_key
from dailydose.forms import form_values, medication_from_form
from dailydose.logs import RingLog
from dailydose.models import (
    Dose, DoseStatus, EnrichedDose, MealTiming, MedicationCategory, MedicationForm, MedicationSchedule,
    RecordDecodeError, ReminderType, decode_enum, schedule_from_row, schedule_to_row,
)
from dailydose.reconcile import enrich, mark_dose_as_taken, mark_dose_status, reconcile, summarize, time_status
from dailydose.reminders import (
    BackgroundScheduler, ReminderScheduler, iter_reminder_times, plan_reminders, prune_fired,
    reminder_message, stable_request_code,
)
from dailydose.repository import DoseLogRepository, MedicationRepository, RepositoryError, Result
from dailydose.schedule import (
    InvalidScheduleError, calculate_doses_for_date, calculate_todays_doses, is_active_on,
    normalize_times, parse_time_of_day, validate_schedule,
)
from dailydose.service import due_for_notification
from dailydose.session import LocalSession
from dailydose.storage import EncryptedStore

DAY = date(2026, 3, 10)
USER = "u1"


def med(mid="m1", name="Amoxicillin", times=("08:00", "20:00"), **kw):
    kw.setdefault("start_date", DAY - timedelta(days=7))
    return MedicationSchedule(id=mid, user_id=USER, name=name, specific_times=times,
                              strength="500mg", dosage="1 capsule", form=MedicationForm.CAPSULE, **kw)


def at(h, m=0, s=0, day=DAY, **kw):
    return datetime.combine(day, time(h, m, s)) + timedelta(**kw)


def logged(mid, label, status=DoseStatus.TAKEN, taken_at=None, day=DAY, **kw):
    h, m = map(int, label.split(":"))
    return Dose(medication_id=mid, user_id=USER, dose_time=at(h, m, day=day), scheduled_time=label,
                status=status, taken_at=taken_at, **kw)


class FakeMedications(MedicationRepository):
    def __init__(self, meds=(), fail=False):
        self.meds = list(meds)
        self.fail = fail

    def get_medications_for_user(self, user_id):
        if self.fail:
            raise RepositoryError("offline")
        return [m for m in self.meds if m.user_id == user_id]

    def get_medication(self, medication_id):
        return next((m for m in self.meds if m.id == medication_id), None)

    def add_medication(self, schedule):
        self.meds.append(schedule)
        return schedule

    def update_medication(self, schedule):
        return schedule

    def delete_medication(self, medication_id):
        pass


class FakeDoseLog(DoseLogRepository):
    def __init__(self, entries=(), fail=False):
        self.entries = list(entries)
        self.fail = fail

    def get_logged_doses(self, user_id, start, end):
        if self.fail:
            raise RepositoryError("offline")
        return [e for e in self.entries if e.user_id == user_id and start <= e.dose_time < end]

    def get_doses_for_medication(self, medication_id):
        return [e for e in self.entries if e.medication_id == medication_id]

    def append_log_entry(self, entry):
        entry = entry.with_changes(id=entry.id or f"log-{len(self.entries) + 1}")
        self.entries.append(entry)
        return Result.success(entry)

    def update_dose_status(self, dose_id, status):
        for i, e in enumerate(self.entries):
            if e.id == dose_id:
                taken_at = e.dose_time if status == DoseStatus.TAKEN else None
                self.entries[i] = e.with_changes(status=status, taken_at=taken_at)
                return Result.success(dose_id)
        return Result.failure(f"no dose log entry with id {dose_id}")


class TestScheduleCalculator(unittest.TestCase):
    def test_doses_for_date_in_time_order(self):
        doses = calculate_doses_for_date([med()], USER, DAY)
        self.assertEqual([d.dose_time for d in doses], [at(8), at(20)])
        self.assertEqual([d.scheduled_time for d in doses], ["08:00", "20:00"])
        self.assertTrue(all(d.status == DoseStatus.UPCOMING for d in doses))
        self.assertTrue(all(d.medication_id == "m1" and d.user_id == USER for d in doses))

    def test_deterministic(self):
        meds = [med(), med("m2", "Metformin", ("07:30", "19:30"))]
        first = calculate_doses_for_date(meds, USER, DAY)
        for _ in range(3):
            self.assertEqual(calculate_doses_for_date(meds, USER, DAY), first)

    def test_count_and_ordering(self):
        meds = [
            med("a", times=("21:00", "06:00", "12:00")),
            med("b", times=("09:00",)),
            med("c", times=("08:00",), is_active=False),
            med("d", times=("10:00", "11:00"), start_date=DAY + timedelta(days=1)),
        ]
        doses = calculate_doses_for_date(meds, USER, DAY)
        self.assertEqual(len(doses), 4)
        times = [d.dose_time for d in doses]
        self.assertEqual(times, sorted(times))

    def test_ended_schedule_produces_nothing(self):
        m = med(end_date=DAY - timedelta(days=1), is_ongoing=False)
        self.assertEqual(calculate_doses_for_date([m], USER, DAY), [])

    def test_end_date_inclusive(self):
        m = med(end_date=DAY)
        self.assertEqual(len(calculate_doses_for_date([m], USER, DAY)), 2)

    def test_ongoing_ignores_end_date(self):
        m = med(end_date=DAY - timedelta(days=30), is_ongoing=True)
        self.assertTrue(is_active_on(m, DAY))
        self.assertEqual(len(calculate_doses_for_date([m], USER, DAY)), 2)

    def test_not_started_and_inactive(self):
        self.assertFalse(is_active_on(med(start_date=DAY + timedelta(days=1)), DAY))
        self.assertTrue(is_active_on(med(start_date=DAY), DAY))
        self.assertFalse(is_active_on(med(is_active=False), DAY))

    def test_malformed_time_is_skipped(self):
        doses = calculate_doses_for_date([med(times=("8h00", "14:00"))], USER, DAY)
        self.assertEqual([d.scheduled_time for d in doses], ["14:00"])

    def test_bad_schedule_does_not_blank_the_day(self):
        meds = [med("bad", times=("25:00", "nonsense")), med("ok", times=("09:00",))]
        doses = calculate_doses_for_date(meds, USER, DAY)
        self.assertEqual([d.medication_id for d in doses], ["ok"])

    def test_same_time_keeps_input_order(self):
        meds = [med("zeta", "Zinc", ("09:00",)), med("alpha", "Aspirin", ("09:00",))]
        doses = calculate_doses_for_date(meds, USER, DAY)
        self.assertEqual([d.medication_id for d in doses], ["zeta", "alpha"])
        self.assertEqual(doses[0].dose_time, doses[1].dose_time)

    def test_datetime_target_is_truncated(self):
        doses = calculate_doses_for_date([med()], USER, datetime(2026, 3, 10, 17, 45, 12, 999))
        self.assertEqual(doses[0].dose_time, at(8))
        self.assertEqual(doses[0].dose_time.second, 0)
        self.assertEqual(doses[0].dose_time.microsecond, 0)

    def test_draft_schedule_has_empty_medication_id(self):
        doses = calculate_doses_for_date([med(mid=None)], USER, DAY)
        self.assertEqual({d.medication_id for d in doses}, {""})

    def test_empty_input(self):
        self.assertEqual(calculate_doses_for_date([], USER, DAY), [])

    def test_todays_doses_uses_today(self):
        m = med(start_date=date.today())
        doses = calculate_todays_doses([m], USER)
        self.assertTrue(all(d.dose_time.date() == date.today() for d in doses))
        self.assertEqual(len(doses), 2)

    def test_parse_time_of_day(self):
        self.assertEqual(parse_time_of_day("8:05"), time(8, 5))
        self.assertEqual(parse_time_of_day(" 23:59 "), time(23, 59))
        for bad in ("8h00", "24:00", "12:60", "", "12:5", None):
            with self.assertRaises(ValueError):
                parse_time_of_day(bad)

    def test_normalize_times(self):
        self.assertEqual(normalize_times(["20:00", "8:00", "08:00", "bogus"]), ["08:00", "20:00"])

    def test_validate_schedule(self):
        bad = med(name=" ", times=("8h00",), end_date=DAY - timedelta(days=30))
        problems = validate_schedule(bad)
        self.assertEqual(len(problems), 3)
        self.assertEqual(validate_schedule(med()), [])


class TestReconciler(unittest.TestCase):
    def setUp(self):
        self.calculated = calculate_doses_for_date([med()], USER, DAY)

    def test_no_logs_shortly_after_first_dose(self):
        out = reconcile(self.calculated, [], at(8, 5), is_target_date_today=True)
        self.assertEqual([d.status for d in out], [DoseStatus.DUE, DoseStatus.UPCOMING])

    def test_log_entry_is_authoritative(self):
        entry = logged("m1", "08:00", taken_at=at(8, 3), id="log-1", notes="with water")
        out = reconcile(self.calculated, [entry], at(8, 5), is_target_date_today=True)
        self.assertEqual(out[0].status, DoseStatus.TAKEN)
        self.assertEqual(out[0].taken_at, at(8, 3))
        self.assertEqual(out[0].notes, "with water")
        self.assertEqual(out[0].id, "log-1")
        self.assertEqual(out[1].status, DoseStatus.UPCOMING)
        self.assertIsNone(out[1].taken_at)

    def test_log_overrides_time_status(self):
        entry = logged("m1", "20:00", status=DoseStatus.SKIPPED)
        out = reconcile(self.calculated, [entry], at(23), is_target_date_today=True)
        self.assertEqual(out[0].status, DoseStatus.MISSED)
        self.assertEqual(out[1].status, DoseStatus.SKIPPED)

    def test_match_needs_medication_and_label(self):
        entries = [logged("other", "08:00"), logged("m1", "08:01")]
        out = reconcile(self.calculated, entries, at(7), is_target_date_today=True)
        self.assertEqual([d.status for d in out], [DoseStatus.UPCOMING, DoseStatus.UPCOMING])

    def test_duplicate_logs_first_wins(self):
        entries = [logged("m1", "08:00", id="first"), logged("m1", "08:00", status=DoseStatus.SKIPPED, id="second")]
        out = reconcile(self.calculated, entries, at(9), is_target_date_today=True)
        self.assertEqual(out[0].id, "first")
        self.assertEqual(out[0].status, DoseStatus.TAKEN)

    def test_missing_log_list(self):
        out = reconcile(self.calculated, None, at(20, 10), is_target_date_today=True)
        self.assertEqual([d.status for d in out], [DoseStatus.MISSED, DoseStatus.DUE])

    def test_due_window_boundaries(self):
        dose_time = at(12)
        self.assertEqual(time_status(dose_time, dose_time - timedelta(minutes=30)), DoseStatus.DUE)
        self.assertEqual(time_status(dose_time, dose_time - timedelta(minutes=30, milliseconds=1)),
                         DoseStatus.UPCOMING)
        self.assertEqual(time_status(dose_time, dose_time + timedelta(minutes=30)), DoseStatus.DUE)
        self.assertEqual(time_status(dose_time, dose_time + timedelta(minutes=30, milliseconds=1)),
                         DoseStatus.MISSED)

    def test_past_day_unlogged_is_missed(self):
        out = reconcile(self.calculated, [logged("m1", "08:00")], at(10, day=DAY + timedelta(days=3)),
                        is_target_date_today=False)
        self.assertEqual([d.status for d in out], [DoseStatus.TAKEN, DoseStatus.MISSED])

    def test_future_day_unlogged_stays_upcoming(self):
        out = reconcile(self.calculated, [], at(10, day=DAY - timedelta(days=1)), is_target_date_today=False)
        self.assertEqual({d.status for d in out}, {DoseStatus.UPCOMING})

    def test_future_day_switch_is_reachable_from_package(self):
        import dailydose
        self.assertIs(dailydose.reconcile, rec)
        self.assertFalse(dailydose.reconcile.MARK_FUTURE_UNLOGGED_MISSED)

    def test_future_day_can_be_marked_missed(self):
        with mock.patch.object(rec, "MARK_FUTURE_UNLOGGED_MISSED", True):
            out = reconcile(self.calculated, [], at(10, day=DAY - timedelta(days=1)), is_target_date_today=False)
        self.assertEqual({d.status for d in out}, {DoseStatus.MISSED})

    def test_reconcile_does_not_mutate_input(self):
        reconcile(self.calculated, [], at(22), is_target_date_today=True)
        self.assertTrue(all(d.status == DoseStatus.UPCOMING for d in self.calculated))


class TestEnrichAndMark(unittest.TestCase):
    def test_enrich_copies_display_fields(self):
        m = med(meal_timing=MealTiming.AFTER_MEAL)
        out = enrich(calculate_doses_for_date([m], USER, DAY), [m])
        self.assertEqual(out[0].medication_name, "Amoxicillin")
        self.assertEqual(out[0].medication_strength, "500mg")
        self.assertEqual(out[0].medication_form, "CAPSULE")
        self.assertEqual(out[0].medication_dosage, "1 capsule")
        self.assertEqual(out[0].meal_timing, "AFTER_MEAL")

    def test_enrich_unknown_medication_placeholder(self):
        out = enrich([logged("gone", "08:00")], [med()])
        self.assertEqual(out[0].medication_name, "Unknown Medication")
        self.assertEqual((out[0].medication_strength, out[0].medication_form, out[0].medication_dosage),
                         ("", "", ""))
        self.assertIsNone(out[0].meal_timing)
        self.assertEqual(out[0].status, DoseStatus.TAKEN)

    def test_enrich_is_idempotent(self):
        meds = [med(), med("m2", "Metformin", ("09:00",))]
        doses = reconcile(calculate_doses_for_date(meds, USER, DAY), [], at(9), True)
        self.assertEqual(enrich(doses, meds), enrich(doses, meds))

    def test_enriched_round_trips_to_dose(self):
        d = logged("m1", "08:00", taken_at=at(8, 2), id="x")
        self.assertEqual(EnrichedDose.from_dose(d, med()).to_dose(), d)

    def test_mark_dose_as_taken(self):
        instance = calculate_doses_for_date([med()], USER, DAY)[0]
        entry = mark_dose_as_taken(instance, now=at(8, 3))
        self.assertEqual(entry.status, DoseStatus.TAKEN)
        self.assertEqual(entry.taken_at, at(8, 3))
        self.assertEqual((entry.medication_id, entry.user_id, entry.dose_time, entry.scheduled_time),
                         (instance.medication_id, instance.user_id, instance.dose_time, instance.scheduled_time))
        self.assertIsNone(entry.id)

    def test_mark_skipped_has_no_taken_at(self):
        instance = calculate_doses_for_date([med()], USER, DAY)[1]
        entry = mark_dose_status(instance, DoseStatus.SKIPPED, now=at(20, 1), notes="nausea")
        self.assertEqual(entry.status, DoseStatus.SKIPPED)
        self.assertIsNone(entry.taken_at)
        self.assertEqual(entry.notes, "nausea")

    def test_summary(self):
        doses = [logged("a", "08:00"), logged("b", "09:00", status=DoseStatus.MISSED),
                 logged("c", "10:00", status=DoseStatus.DUE), logged("d", "11:00", status=DoseStatus.UPCOMING),
                 logged("e", "12:00", status=DoseStatus.SKIPPED)]
        s = summarize(doses)
        self.assertEqual((s.taken, s.missed, s.skipped, s.pending, s.total), (1, 1, 1, 2, 5))
        self.assertAlmostEqual(s.adherence, 0.3333)
        self.assertIsNone(summarize([]).adherence)


class TestModels(unittest.TestCase):
    def test_enum_decoding_fails_closed(self):
        self.assertEqual(decode_enum(DoseStatus, "TAKEN"), DoseStatus.TAKEN)
        self.assertEqual(decode_enum(MealTiming, "after_meal"), MealTiming.AFTER_MEAL)
        with self.assertRaises(RecordDecodeError):
            decode_enum(DoseStatus, "TAKEN_LATE")
        with self.assertRaises(RecordDecodeError):
            decode_enum(DoseStatus, None)

    def test_schedule_row(self):
        m = med(end_date=DAY, meal_timing=MealTiming.WITH_MEAL, refill_count=2)
        row = schedule_to_row(m)
        self.assertEqual(row["specific_times"], '["08:00", "20:00"]')
        self.assertEqual(row["start_date"], "2026-03-03")
        self.assertEqual(schedule_from_row(row), m)

    def test_schedule_row_with_unknown_form(self):
        row = schedule_to_row(med())
        row["form"] = "LOZENGE"
        with self.assertRaises(RecordDecodeError):
            schedule_from_row(row)

    def test_with_changes_returns_new_snapshot(self):
        m = med()
        changed = m.with_changes(specific_times=["07:00"])
        self.assertEqual(m.specific_times, ("08:00", "20:00"))
        self.assertEqual(changed.specific_times, ("07:00",))
        self.assertEqual(changed.times_per_day, 1)


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = b"dose log" * 1000
        self.assertEqual(aes_decrypt(aes_encrypt(pt, key), key), pt)

    def test_key_is_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".enc_key"
            k1 = load_or_create_key(path)
            k2 = load_or_create_key(path)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)

    def test_unreadable_wrapped_key_is_kept(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".enc_key"
            wrapped = b"\x5a" * 256
            path.write_bytes(wrapped)
            with mock.patch.object(crypto, "on_android", return_value=True), \
                    mock.patch.object(crypto, "unwrap_key", side_effect=RuntimeError("keystore busy")):
                with self.assertRaises(KeyUnavailableError):
                    load_or_create_key(path)
            self.assertEqual(path.read_bytes(), wrapped)

    def test_truncated_key_file_is_kept(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".enc_key"
            path.write_bytes(b"short")
            with self.assertRaises(KeyUnavailableError):
                load_or_create_key(path)
            self.assertEqual(path.read_bytes(), b"short")


class TestEncryptedStore(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.key = AESGCM.generate_key(bit_length=256)
        self.store = EncryptedStore(self.key, self.td / "medications.db.aes", self.td / "tmp")

    def tearDown(self):
        self._td.cleanup()

    def test_database_is_encrypted_at_rest(self):
        self.store.add_medication(med(mid=None))
        self.assertNotIn(b"SQLite format", self.store.db_path.read_bytes())
        self.assertEqual(list((self.td / "tmp").iterdir()), [])

    def test_medication_roundtrip(self):
        saved = self.store.add_medication(med(mid=None, meal_timing=MealTiming.BEFORE_MEAL))
        self.assertTrue(saved.id)
        self.assertEqual(self.store.get_medications_for_user(USER), [saved])
        self.assertEqual(self.store.get_medication(saved.id), saved)
        self.assertEqual(self.store.get_medications_for_user("someone-else"), [])

    def test_write_time_validation(self):
        with self.assertRaises(InvalidScheduleError):
            self.store.add_medication(med(mid=None, times=("8h00",)))
        self.assertEqual(self.store.get_medications_for_user(USER), [])

    def test_update_and_soft_delete(self):
        saved = self.store.add_medication(med(mid=None))
        self.store.update_medication(saved.with_changes(specific_times=("09:00",)))
        self.assertEqual(self.store.get_medication(saved.id).specific_times, ("09:00",))
        self.store.delete_medication(saved.id)
        self.assertFalse(self.store.get_medication(saved.id).is_active)
        self.assertEqual(self.store.get_schedules_active_on(USER, DAY), [])

    def test_dose_log_day_range(self):
        self.assertTrue(self.store.append_log_entry(logged("m1", "08:00", taken_at=at(8, 3))).is_success)
        self.store.append_log_entry(logged("m1", "08:00", day=DAY + timedelta(days=1)))
        self.store.append_log_entry(logged("m1", "23:59", day=DAY - timedelta(days=1)))
        day = self.store.get_logged_doses_for_day(USER, DAY)
        self.assertEqual(len(day), 1)
        self.assertEqual(day[0].taken_at, at(8, 3))
        self.assertEqual(day[0].status, DoseStatus.TAKEN)
        self.assertEqual(len(self.store.get_doses_for_medication("m1")), 3)

    def test_update_dose_status(self):
        saved = self.store.append_log_entry(logged("m1", "08:00")).value
        self.assertTrue(self.store.update_dose_status(saved.id, DoseStatus.SKIPPED).is_success)
        self.assertEqual(self.store.get_logged_doses_for_day(USER, DAY)[0].status, DoseStatus.SKIPPED)
        self.assertFalse(self.store.update_dose_status("missing", DoseStatus.TAKEN).is_success)

    def test_wrong_key(self):
        other = EncryptedStore(AESGCM.generate_key(bit_length=256), self.store.db_path, self.td / "tmp")
        with self.assertRaises(RepositoryError):
            other.get_medications_for_user(USER)

    def test_corrupt_status_is_a_repository_error(self):
        with self.store._connect(write=True) as conn:
            conn.execute("INSERT INTO dose_log (id, medication_id, user_id, dose_time, scheduled_time, status) "
                         "VALUES ('x', 'm1', ?, ?, '08:00', 'TAKEN_LATE')", (USER, at(8).isoformat()))
        with self.assertRaises(RepositoryError):
            self.store.get_logged_doses_for_day(USER, DAY)


class TestDoseBoard(unittest.TestCase):
    def board(self, meds=(), logs=(), now=None, user=USER, **kw):
        self.meds = FakeMedications(meds, fail=kw.get("meds_fail", False))
        self.log = FakeDoseLog(logs, fail=kw.get("logs_fail", False))
        return DoseBoard(self.meds, self.log, LocalSession(user), clock=lambda: now or at(8, 5))

    def test_today(self):
        b = self.board([med()], [logged("m1", "08:00", taken_at=at(8, 3))]).load_today()
        self.assertTrue(b.ok)
        self.assertEqual([d.status for d in b.doses], [DoseStatus.TAKEN, DoseStatus.UPCOMING])
        self.assertEqual(b.doses[0].medication_name, "Amoxicillin")
        self.assertEqual((b.summary.taken, b.summary.pending), (1, 1))

    def test_log_failure_degrades_to_time_status(self):
        b = self.board([med()], logs_fail=True).load_today()
        self.assertEqual([d.status for d in b.doses], [DoseStatus.DUE, DoseStatus.UPCOMING])
        self.assertEqual(len(b.errors), 1)

    def test_medication_failure_gives_empty_board(self):
        b = self.board([med()], meds_fail=True).load_today()
        self.assertEqual(b.doses, ())
        self.assertFalse(b.ok)

    def test_not_authenticated(self):
        b = self.board([med()], user=None).load_today()
        self.assertEqual(b.errors, (NOT_AUTHENTICATED,))
        self.assertFalse(self.board([med()], user="").mark_taken(logged("m1", "08:00")).is_success)

    def test_history_day(self):
        board = self.board([med()], [logged("m1", "20:00", day=DAY - timedelta(days=1))])
        b = board.load_day(shift_day(DAY, -1))
        self.assertEqual([d.status for d in b.doses], [DoseStatus.MISSED, DoseStatus.TAKEN])
        self.assertEqual(b.summary.missed, 1)
        future = board.load_day(shift_day(DAY, 2))
        self.assertEqual({d.status for d in future.doses}, {DoseStatus.UPCOMING})

    def test_mark_taken_then_reload(self):
        board = self.board([med()])
        first = board.load_today()
        self.assertTrue(board.mark_taken(first.doses[0]).is_success)
        self.assertEqual(board.load_today().doses[0].status, DoseStatus.TAKEN)
        self.assertTrue(board.mark_skipped(first.doses[1]).is_success)
        self.assertEqual(board.load_today().doses[1].status, DoseStatus.SKIPPED)

    def test_with_encrypted_store(self):
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedStore(AESGCM.generate_key(bit_length=256), Path(td) / "db.aes", Path(td) / "tmp")
            saved = store.add_medication(med(mid=None))
            board = DoseBoard(store, store, LocalSession(USER), clock=lambda: at(8, 5))
            board.mark_taken(board.load_today().doses[0])
            b = board.load_today()
            self.assertEqual(b.doses[0].medication_id, saved.id)
            self.assertEqual([d.status for d in b.doses], [DoseStatus.TAKEN, DoseStatus.UPCOMING])

    def test_skip_then_take_updates_the_logged_dose(self):
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedStore(AESGCM.generate_key(bit_length=256), Path(td) / "db.aes", Path(td) / "tmp")
            saved = store.add_medication(med(mid=None))
            board = DoseBoard(store, store, LocalSession(USER), clock=lambda: at(8, 5))
            self.assertTrue(board.mark_skipped(board.load_today().doses[0]).is_success)
            skipped = board.load_today().doses[0]
            self.assertEqual(skipped.status, DoseStatus.SKIPPED)
            self.assertIsNotNone(skipped.id)

            self.assertTrue(board.mark_taken(skipped).is_success)
            taken = board.load_today().doses[0]
            self.assertEqual(taken.status, DoseStatus.TAKEN)
            self.assertIsNotNone(taken.taken_at)
            self.assertEqual(len(store.get_doses_for_medication(saved.id)), 1)

    def test_take_then_skip_clears_taken_at(self):
        board = self.board([med()])
        board.mark_taken(board.load_today().doses[0])
        taken = board.load_today().doses[0]
        self.assertTrue(board.mark_skipped(taken).is_success)
        skipped = board.load_today().doses[0]
        self.assertEqual(skipped.status, DoseStatus.SKIPPED)
        self.assertIsNone(skipped.taken_at)
        self.assertEqual(len(self.log.entries), 1)

    def test_update_of_unknown_entry_fails(self):
        board = self.board([med()])
        dose = board.load_today().doses[0].to_dose().with_changes(id="gone")
        self.assertFalse(board.mark_taken(dose).is_success)


class FakeAlarm:
    def __init__(self):
        self.scheduled = []
        self.cancelled = []

    def schedule(self, alarm):
        self.scheduled.append(alarm)

    def cancel(self, request_code):
        self.cancelled.append(request_code)


class TestReminders(unittest.TestCase):
    def test_bounded_series(self):
        m = med(start_date=DAY, end_date=DAY + timedelta(days=1))
        self.assertEqual(list(iter_reminder_times(m, at(9))),
                         [at(20), at(8, day=DAY + timedelta(days=1)), at(20, day=DAY + timedelta(days=1))])

    def test_ongoing_series_is_unbounded(self):
        m = med(start_date=DAY, end_date=DAY, is_ongoing=True, times=("09:00",))
        times = list(islice(iter_reminder_times(m, at(10)), 5))
        self.assertEqual(times, [at(9, day=DAY + timedelta(days=n)) for n in range(1, 6)])

    def test_series_starts_at_start_date(self):
        m = med(start_date=DAY + timedelta(days=2), times=("09:00",))
        self.assertEqual(next(iter_reminder_times(m, at(10))), at(9, day=DAY + timedelta(days=2)))

    def test_series_with_no_valid_times_is_empty(self):
        self.assertEqual(list(iter_reminder_times(med(times=("8h00",), is_ongoing=True), at(9))), [])

    def test_plan(self):
        meds = [med(), med("quiet", reminders_enabled=False), med(mid=None)]
        plan = plan_reminders(meds, at(9), hours=24)
        self.assertEqual([a.fire_at for a in plan], [at(20), at(8, day=DAY + timedelta(days=1))])
        self.assertEqual(plan[0].request_code, stable_request_code("m1", at(20)))
        self.assertIn("Amoxicillin", plan[0].body)

    def test_request_code_is_stable(self):
        self.assertEqual(stable_request_code("m1", at(8)), stable_request_code("m1", at(8)))
        self.assertNotEqual(stable_request_code("m1", at(8)), stable_request_code("m1", at(20)))
        self.assertLessEqual(stable_request_code("m1", at(8)), 0x7FFFFFFF)

    def test_message_rotates(self):
        self.assertEqual(reminder_message("X", 0), reminder_message("X", 10))
        self.assertNotEqual(reminder_message("X", 0), reminder_message("X", 1))

    def test_resync_cancels_dropped_alarms(self):
        alarm = FakeAlarm()
        rs = ReminderScheduler(alarm, hours=24)
        rs.resync([med()], now=at(9))
        self.assertEqual(len(alarm.scheduled), 2)
        rs.resync([med(times=("20:00",))], now=at(9))
        self.assertEqual(len(alarm.scheduled), 2)
        self.assertEqual(alarm.cancelled, [stable_request_code("m1", at(8, day=DAY + timedelta(days=1)))])
        self.assertEqual(len(rs.scheduled), 1)

    def test_in_app_reminder_fires_once(self):
        board = DoseBoard(FakeMedications([med()]), FakeDoseLog(), LocalSession(USER), clock=lambda: at(8, 0, 10))
        sched = BackgroundScheduler(board, poll_seconds=30)
        self.assertEqual(len(sched.check(now=at(8, 0, 10))), 1)
        self.assertEqual(sched.check(now=at(8, 0, 10)), [])

    def test_service_notification_window(self):
        board = DoseBoard(FakeMedications([med()]), FakeDoseLog(), LocalSession(USER), clock=lambda: at(7, 59, 30))
        fired = {}
        due = due_for_notification(board, fired, at(7, 59, 30))
        self.assertEqual([d.scheduled_time for _, d in due], ["08:00"])
        self.assertEqual(due_for_notification(board, fired, at(7, 59, 30)), [])

    def test_fired_keys_from_earlier_days_are_dropped(self):
        yesterday = ("m1", at(8, day=DAY - timedelta(days=1)))
        fired = {yesterday: 1.0, ("m1", at(8)): 2.0}
        prune_fired(fired, at(9))
        self.assertEqual(list(fired), [("m1", at(8))])

        board = DoseBoard(FakeMedications([med()]), FakeDoseLog(), LocalSession(USER), clock=lambda: at(7, 59, 30))
        service_fired = {yesterday: 1.0}
        due_for_notification(board, service_fired, at(7, 59, 30))
        self.assertNotIn(yesterday, service_fired)

        sched = BackgroundScheduler(board, poll_seconds=30)
        sched._fired[yesterday] = 1.0
        sched.check(now=at(7, 59, 30))
        self.assertNotIn(yesterday, sched._fired)
        self.assertIn(("m1", at(8)), sched._fired)


class TestAndroidSources(unittest.TestCase):
    def test_receiver_matches_alarm_target(self):
        settings = Settings(base_dir=Path("unused"), android_package="org.example.meds")
        files = render_android_sources(settings)
        receiver = files[str(Path("org", "example", "meds", "AlarmReceiver.java"))]
        self.assertIn("package org.example.meds;", receiver)
        self.assertIn("class AlarmReceiver extends BroadcastReceiver", receiver)
        for extra in ('"title"', '"body"', '"medication_id"', '"scheduled_time"'):
            self.assertIn(extra, receiver)
        manifest = files["extra_manifest.xml"]
        self.assertIn(f'android:name="{settings.alarm_receiver}"', manifest)
        self.assertIn("android.permission.POST_NOTIFICATIONS", manifest)
        self.assertIn("android.intent.action.BOOT_COMPLETED", manifest)

    def test_write_sources(self):
        with tempfile.TemporaryDirectory() as td:
            settings = Settings(base_dir=Path(td))
            root = write_android_sources(Path(td), settings)
            self.assertTrue((root / "extra_manifest.xml").exists())
            java = root / "org" / "example" / "dailydose"
            self.assertEqual(sorted(p.name for p in java.iterdir()), ["AlarmReceiver.java", "BootReceiver.java"])


class TestMedicationForm(unittest.TestCase):
    FIELDS = {
        "name": " Lisinopril ", "strength": "10mg", "dosage": "1 tablet", "form": "tablet",
        "meal_timing": "before meal", "start_date": "2026-03-01", "end_date": "",
        "reminder_type": "silent", "category": "blood pressure", "prescribed_by": "Dr. Osei",
        "refill_count": "3", "notes": "",
    }

    def test_all_fields_are_read(self):
        m = medication_from_form(self.FIELDS, ["20:00", "8:00"], USER, reminders_enabled=False)
        self.assertEqual(m.name, "Lisinopril")
        self.assertEqual(m.meal_timing, MealTiming.BEFORE_MEAL)
        self.assertEqual(m.reminder_type, ReminderType.SILENT)
        self.assertEqual(m.category, MedicationCategory.BLOOD_PRESSURE)
        self.assertEqual(m.prescribed_by, "Dr. Osei")
        self.assertEqual(m.refill_count, 3)
        self.assertIsNone(m.notes)
        self.assertTrue(m.is_ongoing)
        self.assertEqual(m.specific_times, ("08:00", "20:00"))
        self.assertFalse(m.reminders_enabled)

    def test_reminders_off_plans_no_alarms(self):
        m = medication_from_form(self.FIELDS, ["09:00"], USER, reminders_enabled=False).with_changes(id="m9")
        self.assertEqual(plan_reminders([m], at(8), hours=48), [])
        self.assertEqual(len(plan_reminders([m.with_changes(reminders_enabled=True)], at(8), hours=48)), 2)

    def test_edit_keeps_identity(self):
        existing = med(refill_count=1)
        values = form_values(existing)
        self.assertEqual(values["refill_count"], "1")
        edited = medication_from_form(dict(values, dosage="2 capsules"), existing.specific_times, USER,
                                      existing=existing)
        self.assertEqual(edited.id, "m1")
        self.assertEqual(edited.dosage, "2 capsules")
        self.assertEqual(edited.form, MedicationForm.CAPSULE)

    def test_bad_input(self):
        for field, value in (("refill_count", "-1"), ("refill_count", "two"), ("category", "magic"),
                             ("start_date", "03/01/2026")):
            with self.assertRaises(ValueError):
                medication_from_form(dict(self.FIELDS, **{field: value}), ["09:00"], USER)


class TestConfigAndLogs(unittest.TestCase):
    def test_settings_from_env(self):
        with tempfile.TemporaryDirectory() as td:
            s = Settings.from_env({"DAILYDOSE_DATA_DIR": td, "DAILYDOSE_USER_ID": "alice",
                                   "DAILYDOSE_RESYNC_HOURS": "abc", "DAILYDOSE_POLL_SECONDS": "5"})
            self.assertEqual(s.base_dir, Path(td))
            self.assertEqual(s.user_id, "alice")
            self.assertEqual(s.resync_hours, 36)
            self.assertEqual(s.poll_seconds, 5)
            self.assertEqual(s.db_path, Path(td) / "medications.db.aes")
            self.assertEqual(s.alarm_receiver, "org.example.dailydose.AlarmReceiver")

    def test_ring_log_keeps_last_lines(self):
        ring = RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}\n")
        ring.add("")
        self.assertEqual(ring.lines(), ["line 2", "line 3", "line 4"])
        ring.clear()
        self.assertEqual(ring.text(), "")


if __name__ == "__main__":
    unittest.main(verbosity=2)
