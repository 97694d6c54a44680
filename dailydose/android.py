# dailydose/android.py
# Java receivers and manifest fragment that the AlarmManager broadcasts in
# reminders.py are addressed to. Generated into the Buildozer project with
#
#   python main.py --gen-android
#
# and wired up in buildozer.spec:
#
#   android.add_src = android_src
#   android.extra_manifest_xml = android_src/extra_manifest.xml

import logging
from pathlib import Path
from typing import Dict

from .config import Settings

logger = logging.getLogger(__name__)

SRC_DIR_NAME = "android_src"
CHANNEL_ID = "dailydose_reminders"

ALARM_RECEIVER_JAVA = r"""package {package};

import android.app.Notification;
import android.app.NotificationChannel;
import android.app.NotificationManager;
import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;
import android.os.Build;

/** Posts the reminder scheduled by dailydose.reminders.AndroidAlarm. */
public class AlarmReceiver extends BroadcastReceiver {{
    static final String CHANNEL_ID = "{channel_id}";

    private static String extra(Intent intent, String name, String fallback) {{
        String value = intent.getStringExtra(name);
        return value != null ? value : fallback;
    }}

    @Override
    public void onReceive(Context context, Intent intent) {{
        String title = extra(intent, "title", "Medication Reminder");
        String body = extra(intent, "body", "It's time for your medication");
        String slot = extra(intent, "medication_id", "") + "|" + extra(intent, "scheduled_time", "");

        NotificationManager manager =
                (NotificationManager) context.getSystemService(Context.NOTIFICATION_SERVICE);
        Notification.Builder builder;
        if (Build.VERSION.SDK_INT >= 26) {{
            NotificationChannel channel = new NotificationChannel(
                    CHANNEL_ID, "Medication Reminders", NotificationManager.IMPORTANCE_HIGH);
            channel.setDescription("Notifications for medication reminders");
            manager.createNotificationChannel(channel);
            builder = new Notification.Builder(context, CHANNEL_ID);
        }} else {{
            builder = new Notification.Builder(context);
        }}
        builder.setContentTitle(title)
               .setContentText(body)
               .setSmallIcon(context.getApplicationInfo().icon)
               .setAutoCancel(true);
        // one notification per dose slot; a repeat replaces rather than stacks
        manager.notify(slot.hashCode() & 0x7fffffff, builder.build());
    }}
}}
"""

BOOT_RECEIVER_JAVA = r"""package {package};

import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;

/** Alarms do not survive a reboot; open the app so it resyncs them. */
public class BootReceiver extends BroadcastReceiver {{
    @Override
    public void onReceive(Context context, Intent intent) {{
        Intent launch = context.getPackageManager()
                .getLaunchIntentForPackage(context.getPackageName());
        if (launch == null) {{
            return;
        }}
        launch.addFlags(Intent.FLAG_ACTIVITY_NEW_TASK);
        context.startActivity(launch);
    }}
}}
"""

MANIFEST_XML = r"""<manifest xmlns:android="http://schemas.android.com/apk/res/android">
    <uses-permission android:name="android.permission.POST_NOTIFICATIONS"/>
    <uses-permission android:name="android.permission.SCHEDULE_EXACT_ALARM"/>
    <uses-permission android:name="android.permission.RECEIVE_BOOT_COMPLETED"/>
    <uses-permission android:name="android.permission.WAKE_LOCK"/>

    <application>
        <receiver android:name="{alarm_receiver}" android:exported="false"/>
        <receiver android:name="{package}.BootReceiver" android:exported="false">
            <intent-filter>
                <action android:name="android.intent.action.BOOT_COMPLETED"/>
                <action android:name="android.intent.action.LOCKED_BOOT_COMPLETED"/>
            </intent-filter>
        </receiver>
    </application>
</manifest>
"""


def render_android_sources(settings: Settings) -> Dict[str, str]:
    """Relative path -> file text, for the configured Android package."""
    package = settings.android_package
    java_dir = Path(*package.split("."))
    fields = dict(package=package, channel_id=CHANNEL_ID, alarm_receiver=settings.alarm_receiver)
    return {
        str(java_dir / "AlarmReceiver.java"): ALARM_RECEIVER_JAVA.format(**fields),
        str(java_dir / "BootReceiver.java"): BOOT_RECEIVER_JAVA.format(**fields),
        "extra_manifest.xml": MANIFEST_XML.format(**fields),
    }


def write_android_sources(out_dir: Path, settings: Settings) -> Path:
    src_root = Path(out_dir) / SRC_DIR_NAME
    for rel, text in render_android_sources(settings).items():
        path = src_root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    logger.info("wrote android sources to %s", src_root)
    return src_root
