"""
Process Log Module
Collects user-facing log entries and progress for one pipeline run
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.SUCCESS: logging.INFO,
}


@dataclass
class LogEntry:
    """One message shown to the user."""
    message: str
    severity: Severity = Severity.INFO
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
        }


LogCallback = Callable[[str, str], None]
ProgressCallback = Callable[[int], None]


class ProcessLog:
    """
    Accumulates log entries, forwards them to optional callbacks and
    mirrors them into the standard logging tree.
    """

    def __init__(self, callback: Optional[LogCallback] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 logger: Optional[logging.Logger] = None):
        self.entries: List[LogEntry] = []
        self.last_progress = 0
        self._callback = callback
        self._progress_callback = progress_callback
        self._logger = logger or logging.getLogger(__name__)

    def log(self, message: str, severity="info") -> LogEntry:
        severity = Severity(severity)
        entry = LogEntry(message=message, severity=severity)
        self.entries.append(entry)
        self._logger.log(_LEVELS[severity], message)
        if self._callback:
            self._callback(message, severity.value)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.log(message, Severity.INFO)

    def warning(self, message: str) -> LogEntry:
        return self.log(message, Severity.WARNING)

    def error(self, message: str) -> LogEntry:
        return self.log(message, Severity.ERROR)

    def success(self, message: str) -> LogEntry:
        return self.log(message, Severity.SUCCESS)

    def progress(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        self.last_progress = percent
        if self._progress_callback:
            self._progress_callback(percent)

    def messages(self, severity: Optional[str] = None) -> List[str]:
        if severity is None:
            return [e.message for e in self.entries]
        wanted = Severity(severity)
        return [e.message for e in self.entries if e.severity == wanted]

    def has_errors(self) -> bool:
        return any(e.severity == Severity.ERROR for e in self.entries)

    def to_list(self) -> List[dict]:
        return [e.to_dict() for e in self.entries]
