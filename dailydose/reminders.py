# dailydose/reminders.py
# Device reminders. Alarm times are derived from the same "active on date"
# rule the screens use, so what the phone rings for is what the home screen
# shows.

import time
import hashlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence

from .crypto import on_android
from .models import DoseStatus, MedicationSchedule
from .schedule import doses_for_schedule, is_active_on

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Medication Reminder"
NOTIFICATION_PERMISSION_REQUEST = 2407

MESSAGES = (
    "Time for your {name}! Your health is your wealth",
    "Don't forget your {name}! Every dose brings you closer to wellness",
    "Your {name} is ready! Stay consistent, stay healthy",
    "Medication time! {name} is your ally in staying well",
    "Take your {name} now! Small steps lead to big improvements",
    "Your {name} reminder! Consistency is key to recovery",
    "Time for {name}! You're doing great by staying on track",
    "Don't skip your {name}! Your future self will thank you",
    "Medication alert: {name}! Keep up the good work",
    "Your {name} is due! Every dose counts towards your health",
)


def reminder_message(name: str, index: int) -> str:
    return MESSAGES[index % len(MESSAGES)].format(name=name)


def stable_request_code(medication_id: str, when: datetime) -> int:
    key = f"{medication_id}|{when.strftime('%Y-%m-%d %H:%M')}"
    h = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(h[:4], "big") & 0x7FFFFFFF


@dataclass(frozen=True)
class ReminderAlarm:
    medication_id: str
    medication_name: str
    scheduled_time: str
    fire_at: datetime
    request_code: int
    title: str
    body: str


def iter_reminder_times(schedule: MedicationSchedule, since: datetime,
                        until: Optional[datetime] = None) -> Iterator[datetime]:
    """Fire times strictly after `since` (and at or before `until`), ascending.

    Open-ended schedules never run out; pass `until` or slice the iterator.
    """
    if not schedule.is_active or not doses_for_schedule(schedule, schedule.user_id, since):
        return
    day = max(since.date(), schedule.start_date)
    bounded = not schedule.is_ongoing and schedule.end_date is not None
    while True:
        if bounded and day > schedule.end_date:
            return
        if until is not None and day > until.date():
            return
        if is_active_on(schedule, day):
            for d in sorted(doses_for_schedule(schedule, schedule.user_id, day),
                            key=lambda x: x.dose_time):
                if d.dose_time <= since:
                    continue
                if until is not None and d.dose_time > until:
                    return
                yield d.dose_time
        day += timedelta(days=1)


def plan_reminders(schedules: Sequence[MedicationSchedule], now: datetime,
                   hours: int = 36) -> List[ReminderAlarm]:
    until = now + timedelta(hours=hours)
    alarms: List[ReminderAlarm] = []
    for s in schedules or []:
        if not s.reminders_enabled or not s.id:
            continue
        for i, when in enumerate(iter_reminder_times(s, now, until)):
            label = when.strftime("%H:%M")
            alarms.append(ReminderAlarm(
                medication_id=s.id,
                medication_name=s.name,
                scheduled_time=label,
                fire_at=when,
                request_code=stable_request_code(s.id, when),
                title=REMINDER_TITLE,
                body=reminder_message(s.name, i),
            ))
    alarms.sort(key=lambda a: a.fire_at)
    return alarms


# -------------------------
# Android AlarmManager
# -------------------------
def android_sdk_int() -> int:
    if not on_android():
        return 0
    try:
        return int(autoclass("android.os.Build$VERSION").SDK_INT)
    except Exception:
        return 0


def _app_context():
    activity = autoclass("org.kivy.android.PythonActivity").mActivity
    return activity.getApplicationContext()


def can_schedule_exact_alarms() -> bool:
    if not on_android():
        return False
    if android_sdk_int() < 31:
        return True
    try:
        Context = autoclass("android.content.Context")
        AlarmManager = autoclass("android.app.AlarmManager")
        am = cast(AlarmManager, _app_context().getSystemService(Context.ALARM_SERVICE))
        return bool(am.canScheduleExactAlarms())
    except Exception:
        logger.exception("canScheduleExactAlarms check failed")
        return False


def ensure_notification_permission() -> bool:
    """Ask for POST_NOTIFICATIONS (Android 13+). True if already granted."""
    if not on_android():
        return False
    if android_sdk_int() < 33:
        return True
    try:
        activity = autoclass("org.kivy.android.PythonActivity").mActivity
        ContextCompat = autoclass("androidx.core.content.ContextCompat")
        ActivityCompat = autoclass("androidx.core.app.ActivityCompat")
        PackageManager = autoclass("android.content.pm.PackageManager")
        perm = autoclass("android.Manifest$permission").POST_NOTIFICATIONS
        if ContextCompat.checkSelfPermission(activity, perm) == PackageManager.PERMISSION_GRANTED:
            return True
        ActivityCompat.requestPermissions(activity, [perm], NOTIFICATION_PERMISSION_REQUEST)
        logger.info("requested POST_NOTIFICATIONS")
    except Exception:
        logger.exception("POST_NOTIFICATIONS request failed")
    return False


class AndroidAlarm:
    def __init__(self, receiver_class: str):
        self.receiver_class = receiver_class

    def _pending_intent(self, alarm: Optional[ReminderAlarm], request_code: int):
        ctx = _app_context()
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")
        intent = Intent()
        intent.setClassName(ctx, self.receiver_class)
        if alarm is not None:
            intent.putExtra("title", alarm.title)
            intent.putExtra("body", alarm.body)
            intent.putExtra("medication_id", alarm.medication_id)
            intent.putExtra("scheduled_time", alarm.scheduled_time)
        flags = PendingIntent.FLAG_UPDATE_CURRENT
        if android_sdk_int() >= 23:
            flags |= PendingIntent.FLAG_IMMUTABLE
        return ctx, PendingIntent.getBroadcast(ctx, int(request_code), intent, int(flags))

    def schedule(self, alarm: ReminderAlarm):
        if not on_android():
            logger.info("[simulated alarm] %s - %s @ %s", alarm.title, alarm.body, alarm.fire_at)
            return
        try:
            Context = autoclass("android.content.Context")
            AlarmManager = autoclass("android.app.AlarmManager")
            ctx, pi = self._pending_intent(alarm, alarm.request_code)
            am = cast(AlarmManager, ctx.getSystemService(Context.ALARM_SERVICE))
            trigger_ms = int(alarm.fire_at.timestamp() * 1000)
            if android_sdk_int() < 23:
                am.setExact(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
            elif can_schedule_exact_alarms():
                am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
            else:
                am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
            logger.info("alarm rc=%s @ %s", alarm.request_code, alarm.fire_at)
        except Exception:
            logger.exception("alarm scheduling failed")

    def cancel(self, request_code: int):
        if not on_android():
            logger.info("[simulated alarm] cancel rc=%s", request_code)
            return
        try:
            Context = autoclass("android.content.Context")
            AlarmManager = autoclass("android.app.AlarmManager")
            ctx, pi = self._pending_intent(None, request_code)
            am = cast(AlarmManager, ctx.getSystemService(Context.ALARM_SERVICE))
            am.cancel(pi)
        except Exception:
            logger.exception("alarm cancel failed")


class ReminderScheduler:
    """Keeps the device's alarms in line with the current medication list."""

    def __init__(self, alarm: AndroidAlarm, hours: int = 36):
        self.alarm = alarm
        self.hours = hours
        self._lock = threading.RLock()
        self._scheduled: Dict[int, ReminderAlarm] = {}

    @property
    def scheduled(self) -> Dict[int, ReminderAlarm]:
        with self._lock:
            return dict(self._scheduled)

    def resync(self, schedules: Sequence[MedicationSchedule], now: Optional[datetime] = None) -> List[ReminderAlarm]:
        now = now or datetime.now()
        with self._lock:
            plan = plan_reminders(schedules, now, self.hours)
            wanted = {a.request_code: a for a in plan}
            for rc in set(self._scheduled) - set(wanted):
                self.alarm.cancel(rc)
            for rc, a in wanted.items():
                if rc not in self._scheduled:
                    self.alarm.schedule(a)
            self._scheduled = wanted
            logger.info("resynced %d reminders over %dh", len(plan), self.hours)
            return plan


def prune_fired(fired: Dict[tuple, float], now: datetime) -> None:
    """Forget (medication_id, dose_time) keys from before today."""
    today = now.date()
    for k in [k for k in fired if k[1].date() < today]:
        del fired[k]


class BackgroundScheduler:
    """In-app reminder loop (desktop, or Android while the app is open)."""

    def __init__(self, board, poll_seconds: int = 30):
        self.board = board
        self.poll_seconds = poll_seconds
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._fired: Dict[tuple, float] = {}

    def start(self):
        if self.running:
            return
        self.running = True
        self.thread = threading.Thread(target=self._loop, daemon=True)
        self.thread.start()
        logger.info("background scheduler started")

    def stop(self):
        self.running = False
        if self.thread:
            self.thread.join(timeout=2)

    def _loop(self):
        while self.running:
            try:
                self.check()
            except Exception:
                logger.exception("background scheduler check failed")
            time.sleep(self.poll_seconds)

    def check(self, now: Optional[datetime] = None) -> list:
        now = now or datetime.now()
        prune_fired(self._fired, now)
        fired = []
        for d in self.board.load_day(now.date()).doses:
            if d.status != DoseStatus.DUE:
                continue
            if abs((d.dose_time - now).total_seconds()) > self.poll_seconds:
                continue
            k = (d.medication_id, d.dose_time)
            if k in self._fired:
                continue
            self._fired[k] = time.time()
            fired.append(d)
            logger.info("[in-app reminder] %s %s @ %s",
                        d.medication_name, d.medication_dosage, d.scheduled_time)
        return fired
