# dailydose/config.py
# Runtime settings, read from the environment.
#
#   DAILYDOSE_DATA_DIR         base dir (default: $ANDROID_PRIVATE/dailydose_data,
#                              else ./dailydose_data next to the package)
#   DAILYDOSE_USER_ID          device-local user id
#   DAILYDOSE_RESYNC_HOURS     how far ahead reminders are scheduled
#   DAILYDOSE_POLL_SECONDS     in-app scheduler poll interval
#   DAILYDOSE_LOG_LINES        log ring buffer size
#   DAILYDOSE_ANDROID_PACKAGE  must match buildozer.spec package.domain + package.name

import os
import uuid
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DATA_DIR_NAME = "dailydose_data"


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        probe = p / f".writetest.{uuid.uuid4().hex}"
        probe.write_text("ok", encoding="utf-8")
        probe.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _default_base_dir(env: Mapping[str, str]) -> Path:
    explicit = env.get("DAILYDOSE_DATA_DIR")
    if explicit:
        return Path(explicit)
    android_private = env.get("ANDROID_PRIVATE")
    if android_private:
        d = Path(android_private) / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d
    return Path(__file__).resolve().parent.parent / DATA_DIR_NAME


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("ignoring %s=%r (not an integer)", name, raw)
        return default
    if value <= 0:
        logger.warning("ignoring %s=%r (must be positive)", name, raw)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    user_id: str = "local-user"
    resync_hours: int = 36
    poll_seconds: int = 30
    log_lines: int = 800
    android_package: str = "org.example.dailydose"

    @property
    def db_path(self) -> Path:
        return self.base_dir / "medications.db.aes"

    @property
    def key_path(self) -> Path:
        return self.base_dir / ".enc_key"

    @property
    def log_path(self) -> Path:
        return self.base_dir / "app.log"

    @property
    def tmp_dir(self) -> Path:
        return self.base_dir / "tmp"

    @property
    def alarm_receiver(self) -> str:
        return f"{self.android_package}.AlarmReceiver"

    def ensure_dirs(self) -> "Settings":
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            base_dir=_default_base_dir(env),
            user_id=env.get("DAILYDOSE_USER_ID") or "local-user",
            resync_hours=_int_env(env, "DAILYDOSE_RESYNC_HOURS", 36),
            poll_seconds=_int_env(env, "DAILYDOSE_POLL_SECONDS", 30),
            log_lines=_int_env(env, "DAILYDOSE_LOG_LINES", 800),
            android_package=env.get("DAILYDOSE_ANDROID_PACKAGE") or "org.example.dailydose",
        )
