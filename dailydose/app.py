# dailydose/app.py
# KivyMD front end: Home (today), Medicines, History, Settings.
#
# Buildozer notes (buildozer.spec):
#   requirements = python3,kivy,kivymd,pyjnius,cryptography
#   android.permissions = POST_NOTIFICATIONS,SCHEDULE_EXACT_ALARM,RECEIVE_BOOT_COMPLETED,WAKE_LOCK,VIBRATE
#   services = Reminders:dailydose/service.py
#   android.add_src = android_src                    (python main.py --gen-android)
#   android.extra_manifest_xml = android_src/extra_manifest.xml

import sys
import logging
from pathlib import Path
from datetime import date
from typing import List, Optional

from kivy.lang import Builder
from kivy.clock import Clock
from kivy.core.window import Window
from kivy.utils import platform as _kivy_platform

from kivymd.app import MDApp
from kivymd.uix.dialog import MDDialog
from kivymd.uix.button import MDFlatButton, MDRaisedButton, MDIconButton
from kivymd.uix.list import TwoLineIconListItem, IconLeftWidget
from kivymd.uix.textfield import MDTextField
from kivymd.uix.boxlayout import MDBoxLayout
from kivymd.uix.label import MDLabel
from kivymd.uix.pickers import MDTimePicker
from kivymd.uix.selectioncontrol import MDCheckbox

from .android import write_android_sources
from .board import DayBoard, DoseBoard, shift_day
from .config import Settings
from .crypto import KeyUnavailableError, load_or_create_key, on_android
from .forms import FORM_FIELDS, form_values, medication_from_form
from .logs import RING, clear_log, configure_logging
from .models import DoseStatus, MedicationSchedule, RecordDecodeError
from .reminders import (
    AndroidAlarm, BackgroundScheduler, ReminderScheduler, can_schedule_exact_alarms,
    ensure_notification_permission,
)
from .schedule import InvalidScheduleError, normalize_times
from .session import LocalSession
from .storage import EncryptedStore

logger = logging.getLogger(__name__)

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = (420, 760)

STATUS_ICONS = {
    DoseStatus.UPCOMING: "clock-outline",
    DoseStatus.DUE: "bell-ring-outline",
    DoseStatus.TAKEN: "check-circle-outline",
    DoseStatus.MISSED: "alert-circle-outline",
    DoseStatus.SKIPPED: "debug-step-over",
}

KV = """
<Header@MDCard>:
    orientation: "vertical"
    padding: "14dp"
    spacing: "4dp"
    size_hint_y: None
    height: "96dp"
    radius: [18]
    md_bg_color: 1, 1, 1, 0.06

MDScreen:
    MDBoxLayout:
        orientation: "vertical"

        MDTopAppBar:
            title: "DailyDose"
            elevation: 4
            right_action_items: [["refresh", lambda x: app.refresh_all()]]

        MDBottomNavigation:
            id: nav
            panel_color: 0.05, 0.08, 0.12, 1

            MDBottomNavigationItem:
                name: "home"
                text: "Today"
                icon: "home"
                on_tab_press: app.refresh_home()
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "12dp"
                    spacing: "10dp"
                    Header:
                        MDLabel:
                            id: today_title
                            text: "Today"
                            bold: True
                            font_style: "H6"
                        MDLabel:
                            id: today_counts
                            text: "-"
                            theme_text_color: "Secondary"
                        MDLabel:
                            id: alarm_status
                            text: "Alarms: -"
                            theme_text_color: "Secondary"
                    ScrollView:
                        MDList:
                            id: today_list
                    MDBoxLayout:
                        size_hint_y: None
                        height: "54dp"
                        spacing: "10dp"
                        MDRaisedButton:
                            text: "Add Medication"
                            on_release: app.show_medication_dialog()
                        MDRaisedButton:
                            text: "Resync Reminders"
                            on_release: app.resync_reminders()

            MDBottomNavigationItem:
                name: "medications"
                text: "Medications"
                icon: "pill"
                on_tab_press: app.refresh_medications()
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "12dp"
                    spacing: "10dp"
                    Header:
                        MDLabel:
                            text: "Medications"
                            bold: True
                            font_style: "H6"
                        MDLabel:
                            id: med_count
                            text: "-"
                            theme_text_color: "Secondary"
                    ScrollView:
                        MDList:
                            id: medications_list

            MDBottomNavigationItem:
                name: "history"
                text: "History"
                icon: "history"
                on_tab_press: app.refresh_history()
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "12dp"
                    spacing: "10dp"
                    Header:
                        MDBoxLayout:
                            spacing: "6dp"
                            MDIconButton:
                                icon: "chevron-left"
                                on_release: app.history_step(-1)
                            MDLabel:
                                id: history_date
                                text: "-"
                                bold: True
                                halign: "center"
                            MDIconButton:
                                icon: "chevron-right"
                                on_release: app.history_step(1)
                        MDLabel:
                            id: history_counts
                            text: "-"
                            theme_text_color: "Secondary"
                    ScrollView:
                        MDList:
                            id: history_list

            MDBottomNavigationItem:
                name: "settings"
                text: "Settings"
                icon: "cog"
                on_tab_press: app.refresh_log()
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "12dp"
                    spacing: "10dp"
                    Header:
                        MDLabel:
                            text: "Settings & Logs"
                            bold: True
                            font_style: "H6"
                        MDLabel:
                            id: db_status
                            text: "-"
                            theme_text_color: "Secondary"
                    ScrollView:
                        MDLabel:
                            id: debug_log
                            text: ""
                            size_hint_y: None
                            height: self.texture_size[1]
                    MDBoxLayout:
                        spacing: "10dp"
                        size_hint_y: None
                        height: "48dp"
                        MDRaisedButton:
                            text: "Refresh Log"
                            on_release: app.refresh_log()
                        MDRaisedButton:
                            text: "Clear Log"
                            on_release: app.clear_log()
"""


def _counts_text(board: DayBoard) -> str:
    s = board.summary
    text = f"{s.taken} taken  •  {s.pending} pending  •  {s.missed} missed"
    if board.errors:
        text += f"\n{board.errors[0]}"
    return text


class DailyDoseApp(MDApp):
    def __init__(self, settings: Optional[Settings] = None, **kwargs):
        super().__init__(**kwargs)
        self.settings = settings or Settings.from_env()
        self.store: Optional[EncryptedStore] = None
        self.session: Optional[LocalSession] = None
        self.board: Optional[DoseBoard] = None
        self.reminders: Optional[ReminderScheduler] = None
        self.scheduler: Optional[BackgroundScheduler] = None
        self.history_day: date = date.today()
        self._dialog: Optional[MDDialog] = None
        self._time_list: List[str] = []

    def build(self):
        self.title = "DailyDose"
        self.theme_cls.theme_style = "Dark"
        self.theme_cls.primary_palette = "Blue"
        return Builder.load_string(KV)

    def on_start(self):
        self.settings.ensure_dirs()
        configure_logging(self.settings)
        logger.info("app start platform=%s base=%s", _kivy_platform, self.settings.base_dir)

        ensure_notification_permission()
        try:
            key = load_or_create_key(self.settings.key_path)
        except KeyUnavailableError:
            # leave the store closed; the settings screen shows "DB not open"
            logger.exception("encryption key unavailable")
            Clock.schedule_once(lambda *_: self.refresh_log(), 0.4)
            return
        self.store = EncryptedStore(key, self.settings.db_path, self.settings.tmp_dir)
        self.session = LocalSession(self.settings.user_id)
        self.board = DoseBoard(self.store, self.store, self.session)
        self.reminders = ReminderScheduler(AndroidAlarm(self.settings.alarm_receiver),
                                           hours=self.settings.resync_hours)
        self.scheduler = BackgroundScheduler(self.board, poll_seconds=self.settings.poll_seconds)
        self.scheduler.start()

        Clock.schedule_once(lambda *_: self.refresh_all(), 0.4)
        Clock.schedule_interval(lambda *_: self.refresh_home(), 60)
        Clock.schedule_interval(lambda *_: self.resync_reminders(), 60 * 15)
        Clock.schedule_once(lambda *_: self.resync_reminders(), 1.0)

    def on_stop(self):
        if self.scheduler:
            self.scheduler.stop()

    # -------------------------
    # Refresh
    # -------------------------
    def refresh_all(self):
        self.refresh_home()
        self.refresh_medications()
        self.refresh_history()
        self.refresh_log()

    def _fill_dose_list(self, widget, board: DayBoard, tappable: bool):
        widget.clear_widgets()
        for d in board.doses:
            text = f"{d.medication_name} {d.medication_strength}".strip()
            sub = f"{d.scheduled_time}  •  {d.status.name.title()}"
            if d.medication_dosage:
                sub += f"  •  {d.medication_dosage}"
            item = TwoLineIconListItem(text=text, secondary_text=sub)
            item.add_widget(IconLeftWidget(icon=STATUS_ICONS.get(d.status, "pill")))
            if tappable and d.status != DoseStatus.TAKEN:
                item.bind(on_release=lambda _, d=d: self.show_dose_dialog(d))
            widget.add_widget(item)

    def refresh_home(self):
        if not self.board:
            return
        try:
            board = self.board.load_today()
            ids = self.root.ids
            ids.today_title.text = board.day.strftime("Today, %d %b")
            ids.today_counts.text = _counts_text(board)
            self._fill_dose_list(ids.today_list, board, tappable=True)
            if on_android():
                ids.alarm_status.text = f"Alarms: {'Exact' if can_schedule_exact_alarms() else 'Fallback'}"
            else:
                ids.alarm_status.text = "Alarms: Desktop (simulated)"
        except Exception:
            logger.exception("refresh_home failed")

    def refresh_medications(self):
        if not self.store or not self.session:
            return
        try:
            meds = [m for m in self.store.get_medications_for_user(self.session.current_user_id() or "")
                    if m.is_active]
            ml = self.root.ids.medications_list
            ml.clear_widgets()
            for m in meds:
                span = "ongoing" if m.is_ongoing or not m.end_date else f"until {m.end_date}"
                item = TwoLineIconListItem(
                    text=f"{m.name} {m.strength}".strip(),
                    secondary_text=f"{', '.join(m.specific_times)}  •  {span}")
                item.add_widget(IconLeftWidget(icon="pill"))
                item.bind(on_release=lambda _, m=m: self.show_medication_dialog(m))
                ml.add_widget(item)
            self.root.ids.med_count.text = f"{len(meds)} active"
        except Exception:
            logger.exception("refresh_medications failed")

    def refresh_history(self):
        if not self.board:
            return
        try:
            board = self.board.load_day(self.history_day)
            self.root.ids.history_date.text = board.day.strftime("%a %d %b %Y")
            self.root.ids.history_counts.text = _counts_text(board)
            self._fill_dose_list(self.root.ids.history_list, board, tappable=False)
        except Exception:
            logger.exception("refresh_history failed")

    def history_step(self, days: int):
        self.history_day = shift_day(self.history_day, days)
        self.refresh_history()

    def refresh_log(self):
        try:
            self.root.ids.debug_log.text = RING.text()
            if self.store:
                self.root.ids.db_status.text = (
                    f"Encrypted DB: {self.store.size_kb():.1f} KB  •  Base: {self.settings.base_dir}")
            else:
                self.root.ids.db_status.text = f"DB not open  •  Base: {self.settings.base_dir}"
        except Exception:
            logger.exception("refresh_log failed")

    def clear_log(self):
        clear_log(self.settings)
        self.root.ids.debug_log.text = ""
        logger.info("log cleared")

    def resync_reminders(self):
        if not self.store or not self.reminders or not self.session:
            return
        try:
            meds = self.store.get_medications_for_user(self.session.current_user_id() or "")
            self.reminders.resync(meds)
        except Exception:
            logger.exception("resync_reminders failed")

    # -------------------------
    # Dose dialog
    # -------------------------
    def show_dose_dialog(self, dose):
        def record(action):
            try:
                result = self.board.mark_taken(dose) if action == "taken" else self.board.mark_skipped(dose)
                if not result.is_success:
                    logger.error("could not record dose: %s", result.error)
                self.refresh_home()
                self.refresh_history()
            except Exception:
                logger.exception("record dose failed")
            dialog.dismiss()

        dialog = MDDialog(
            title=f"{dose.medication_name} {dose.medication_strength}".strip(),
            text=f"Scheduled {dose.scheduled_time}  •  {dose.status.name.title()}",
            buttons=[
                MDFlatButton(text="Cancel", on_release=lambda *_: dialog.dismiss()),
                MDFlatButton(text="Skip", on_release=lambda *_: record("skipped")),
                MDRaisedButton(text="Taken", on_release=lambda *_: record("taken")),
            ],
        )
        dialog.open()

    # -------------------------
    # Add / edit medication
    # -------------------------
    def show_medication_dialog(self, existing: Optional[MedicationSchedule] = None):
        self._time_list = list(existing.specific_times) if existing else []
        initial = form_values(existing)

        content = MDBoxLayout(orientation="vertical", spacing="8dp", padding="8dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))

        hints = {
            "name": "Medication name",
            "strength": "Strength (e.g. 500mg)",
            "dosage": "Dosage (e.g. 1 tablet)",
            "form": "Form (tablet, capsule, syrup...)",
            "meal_timing": "Meal timing (before meal, after meal...) optional",
            "start_date": "Start date (YYYY-MM-DD)",
            "end_date": "End date (YYYY-MM-DD), blank = ongoing",
            "reminder_type": "Reminder sound (default, silent, loud)",
            "category": "Category (heart, vitamins...) optional",
            "prescribed_by": "Prescribed by (optional)",
            "refill_count": "Refills left (optional)",
            "notes": "Notes (optional)",
        }
        fields = {k: MDTextField(hint_text=hints[k], text=initial.get(k, "")) for k in FORM_FIELDS}
        fields["refill_count"].input_filter = "int"

        reminders_row = MDBoxLayout(orientation="horizontal", size_hint_y=None, height="40dp")
        reminders_on = MDCheckbox(active=existing.reminders_enabled if existing else True,
                                  size_hint_x=None, width="40dp")
        reminders_row.add_widget(reminders_on)
        reminders_row.add_widget(MDLabel(text="Remind me"))

        times_box = MDBoxLayout(orientation="vertical", spacing="4dp", size_hint_y=None)
        times_box.bind(minimum_height=times_box.setter("height"))

        def redraw_times():
            times_box.clear_widgets()
            if not self._time_list:
                times_box.add_widget(MDLabel(text="No times added", theme_text_color="Secondary",
                                             size_hint_y=None, height="22dp"))
                return
            for t in self._time_list:
                row = MDBoxLayout(orientation="horizontal", size_hint_y=None, height="38dp")
                row.add_widget(MDLabel(text=t))
                row.add_widget(MDIconButton(icon="close", on_release=lambda _, t=t: remove_time(t)))
                times_box.add_widget(row)

        def remove_time(t):
            self._time_list = [x for x in self._time_list if x != t]
            redraw_times()

        def pick_time(*_):
            picker = MDTimePicker()

            def on_save(_, value):
                self._time_list = normalize_times(self._time_list + [f"{value.hour:02d}:{value.minute:02d}"])
                redraw_times()

            picker.bind(on_save=on_save)
            picker.open()

        for k in FORM_FIELDS:
            content.add_widget(fields[k])
        content.add_widget(reminders_row)
        content.add_widget(MDLabel(text="Times", bold=True, size_hint_y=None, height="24dp"))
        content.add_widget(times_box)
        content.add_widget(MDRaisedButton(text="Add time", on_release=pick_time))
        redraw_times()

        def save(*_):
            try:
                schedule = medication_from_form(
                    {k: w.text for k, w in fields.items()},
                    self._time_list,
                    self.session.current_user_id() or "",
                    reminders_enabled=reminders_on.active,
                    existing=existing,
                )
                if existing:
                    self.store.update_medication(schedule)
                else:
                    self.store.add_medication(schedule)
            except (InvalidScheduleError, RecordDecodeError, ValueError) as e:
                logger.warning("medication not saved: %s", e)
                fields["name"].error = not fields["name"].text.strip()
                return
            except Exception:
                logger.exception("save medication failed")
                return
            self._dialog.dismiss()
            self.refresh_all()
            self.resync_reminders()

        def delete(*_):
            try:
                self.store.delete_medication(existing.id)
            except Exception:
                logger.exception("delete medication failed")
                return
            self._dialog.dismiss()
            self.refresh_all()
            self.resync_reminders()

        buttons = [MDFlatButton(text="Cancel", on_release=lambda *_: self._dialog.dismiss()),
                   MDRaisedButton(text="Save", on_release=save)]
        if existing:
            buttons.insert(0, MDFlatButton(text="Delete", on_release=delete))

        self._dialog = MDDialog(
            title="Edit medication" if existing else "Add medication",
            type="custom",
            content_cls=content,
            buttons=buttons,
        )
        self._dialog.open()


def main():
    settings = Settings.from_env()
    if "--gen-android" in sys.argv:
        print(f"wrote {write_android_sources(Path.cwd(), settings)}")
        return
    DailyDoseApp(settings).run()
