# dailydose/logs.py
# Log sink for the app: every record goes to app.log and to an in-memory ring
# buffer that the settings screen displays.

import logging
from pathlib import Path
from threading import RLock
from typing import List, Optional

from .config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class RingLog:
    def __init__(self, max_lines=800):
        self.max_lines = int(max_lines)
        self._lines: List[str] = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                del self._lines[:-self.max_lines]

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines())

    def clear(self):
        with self._lock:
            self._lines = []


RING = RingLog()
_FILE_LOCK = RLock()


class FileAndRingHandler(logging.Handler):
    def __init__(self, log_path: Optional[Path], ring: RingLog = RING):
        super().__init__()
        self.log_path = log_path
        self.ring = ring
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        self.ring.add(msg)
        if self.log_path is None:
            return
        try:
            with _FILE_LOCK:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            self.handleError(record)


def configure_logging(settings: Settings, level=logging.INFO) -> logging.Logger:
    root = logging.getLogger("dailydose")
    root.setLevel(level)
    RING.max_lines = settings.log_lines
    for h in root.handlers:
        if isinstance(h, FileAndRingHandler):
            h.log_path = settings.log_path
            return root
    root.addHandler(FileAndRingHandler(settings.log_path))
    return root


def clear_log(settings: Settings):
    RING.clear()
    try:
        settings.log_path.unlink(missing_ok=True)
    except OSError:
        logging.getLogger(__name__).exception("could not remove %s", settings.log_path)
