# dailydose/service.py
# Android background service: polls today's doses and posts a notification
# when one comes due. Started by python-for-android as a service entry point.

import time
import logging
from datetime import datetime
from typing import Dict, Tuple

from .android import CHANNEL_ID
from .board import DoseBoard
from .config import Settings
from .crypto import load_or_create_key
from .logs import configure_logging
from .models import DoseStatus
from .reminders import REMINDER_TITLE, prune_fired, reminder_message
from .session import LocalSession
from .storage import EncryptedStore

try:
    from jnius import autoclass
except Exception:
    autoclass = None

logger = logging.getLogger(__name__)

FIRE_EARLY_SECONDS = 45
FIRE_LATE_SECONDS = 20
REPEAT_GUARD_SECONDS = 90


def notify(title: str, text: str):
    if autoclass is None:
        logger.info("[notification] %s: %s", title, text)
        return
    try:
        service = autoclass("org.kivy.android.PythonService").mService
        Context = autoclass("android.content.Context")
        NotificationManager = autoclass("android.app.NotificationManager")
        NotificationChannel = autoclass("android.app.NotificationChannel")
        Notification = autoclass("android.app.Notification")
        Build = autoclass("android.os.Build")

        nm = service.getSystemService(Context.NOTIFICATION_SERVICE)
        if Build.VERSION.SDK_INT >= 26:
            ch = NotificationChannel(CHANNEL_ID, "Medication Reminders", NotificationManager.IMPORTANCE_HIGH)
            ch.setDescription("Notifications for medication reminders")
            nm.createNotificationChannel(ch)
            builder = Notification.Builder(service, CHANNEL_ID)
        else:
            builder = Notification.Builder(service)

        builder.setContentTitle(title)
        builder.setContentText(text)
        builder.setSmallIcon(service.getApplicationInfo().icon)
        builder.setAutoCancel(True)
        nm.notify(int(time.time()) & 0x7FFFFFFF, builder.build())
    except Exception:
        logger.exception("notification failed")


def due_for_notification(board: DoseBoard, fired: Dict[Tuple[str, datetime], float],
                         now: datetime) -> list:
    prune_fired(fired, now)
    out = []
    for i, d in enumerate(board.load_day(now.date()).doses):
        if d.status != DoseStatus.DUE:
            continue
        diff = (d.dose_time - now).total_seconds()
        if not -FIRE_LATE_SECONDS <= diff <= FIRE_EARLY_SECONDS:
            continue
        k = (d.medication_id, d.dose_time)
        if time.time() - fired.get(k, 0) <= REPEAT_GUARD_SECONDS:
            continue
        fired[k] = time.time()
        out.append((i, d))
    return out


def main_loop(settings: Settings = None, interval: int = 20):
    settings = (settings or Settings.from_env()).ensure_dirs()
    configure_logging(settings)
    store = EncryptedStore(load_or_create_key(settings.key_path), settings.db_path, settings.tmp_dir)
    board = DoseBoard(store, store, LocalSession(settings.user_id))
    fired: Dict[Tuple[str, datetime], float] = {}

    while True:
        try:
            for i, d in due_for_notification(board, fired, datetime.now()):
                notify(REMINDER_TITLE, f"{reminder_message(d.medication_name, i)} ({d.scheduled_time})")
        except Exception:
            logger.exception("service check failed")
        time.sleep(interval)


if __name__ == "__main__":
    main_loop()
