# uasession/security/logging_system.py
"""
Structured logging system for the OPC UA session layer.

Provides:
- Structured logging (JSON file output, plain console output)
- Audit trail management
- Event classification (severity, category)
- Log rotation

Session-specific features:
- Event severity levels (IEC 62443)
- Session / endpoint context on every structured entry
- Correlation IDs for tracing a reconnect cycle or a batch
"""

import asyncio
import json
import logging
import logging.handlers
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

__all__ = [
    "EventSeverity",
    "EventCategory",
    "LogEntry",
    "UptimeFormatter",
    "JSONFormatter",
    "SessionLogger",
    "configure_logging",
    "get_logger",
]

# Process-wide reference point for the uptime prefix
_PROCESS_START = time.monotonic()


def uptime() -> float:
    """Seconds since this module was imported."""
    return time.monotonic() - _PROCESS_START


# ----------------------------------------------------------------
# Event Classification
# ----------------------------------------------------------------


class EventSeverity(Enum):
    """
    Event severity levels (aligned with IEC 62443).

    Lower number = higher severity
    """

    CRITICAL = 1  # Session lost, data no longer flowing
    ALERT = 2  # Immediate action required
    ERROR = 3  # Service faults, failed registrations
    WARNING = 4  # Reconnecting, dropped notifications
    NOTICE = 5  # Normal but significant events
    INFO = 6  # Informational messages
    DEBUG = 7  # Debug/diagnostic information


class EventCategory(Enum):
    """Session-layer event categories."""

    SESSION = "session"  # Connect, reconnect, disconnect
    SECURITY = "security"  # Certificates, identities
    AUDIT = "audit"  # Registrations, writes, method calls
    SUBSCRIPTION = "subscription"  # Subscriptions and monitored items
    TYPES = "types"  # Schema refresh and type resolution
    COMMUNICATION = "communication"  # Service faults, transport errors
    DIAGNOSTIC = "diagnostic"  # Diagnostic/maintenance events


# Map Python logging levels to severity
LOGGING_TO_SEVERITY = {
    logging.CRITICAL: EventSeverity.CRITICAL,
    logging.ERROR: EventSeverity.ERROR,
    logging.WARNING: EventSeverity.WARNING,
    logging.INFO: EventSeverity.INFO,
    logging.DEBUG: EventSeverity.DEBUG,
}

SEVERITY_TO_LOGGING = {
    EventSeverity.CRITICAL: logging.CRITICAL,
    EventSeverity.ALERT: logging.CRITICAL,
    EventSeverity.ERROR: logging.ERROR,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.NOTICE: logging.INFO,
    EventSeverity.INFO: logging.INFO,
    EventSeverity.DEBUG: logging.DEBUG,
}


# ----------------------------------------------------------------
# Structured Log Entry
# ----------------------------------------------------------------


@dataclass
class LogEntry:
    """Structured log entry for session events."""

    uptime: float  # Seconds since process start
    wall_time: float  # Wall clock time (epoch seconds)
    severity: EventSeverity
    category: EventCategory
    message: str

    # Context
    session: str = ""  # Session name
    component: str = ""  # Component/subsystem
    user: str = ""  # Identity user name if applicable
    endpoint: str = ""  # Endpoint URL

    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialisation."""
        entry_dict = {
            "uptime": self.uptime,
            "wall_time": self.wall_time,
            "severity": self.severity.name,
            "category": self.category.value,
            "message": self.message,
        }

        # Add optional fields if present
        if self.session:
            entry_dict["session"] = self.session
        if self.component:
            entry_dict["component"] = self.component
        if self.user:
            entry_dict["user"] = self.user
        if self.endpoint:
            entry_dict["endpoint"] = self.endpoint
        if self.data:
            entry_dict["data"] = json.dumps(self.data, default=str)

        return entry_dict

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())

    def to_human_readable(self) -> str:
        """Convert to human-readable format."""
        severity_str = f"[{self.severity.name:8s}]"
        category_str = f"[{self.category.value}]"
        session_str = f"{self.session}:" if self.session else ""
        return f"{severity_str} {category_str} {session_str} {self.message}"


# ----------------------------------------------------------------
# Formatters
# ----------------------------------------------------------------


class UptimeFormatter(logging.Formatter):
    """Format log records with a process uptime prefix."""

    def __init__(self):
        super().__init__(fmt="[UP:%(uptime)9.2fs] [%(levelname)8s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        record.uptime = uptime()
        return super().format(record)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def __init__(self, session: str = ""):
        super().__init__()
        self.session = session

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        severity = LOGGING_TO_SEVERITY.get(record.levelno, EventSeverity.INFO)

        log_entry = LogEntry(
            uptime=uptime(),
            wall_time=record.created,
            severity=severity,
            category=EventCategory.DIAGNOSTIC,
            message=record.getMessage(),
            session=self.session,
            component=record.name,
        )

        if record.exc_info:
            log_entry.data["exception"] = self.formatException(record.exc_info)

        return log_entry.to_json()


# ----------------------------------------------------------------
# Session Logger - logging with structured output
# ----------------------------------------------------------------


class SessionLogger:
    """
    Logger for session-layer components.

    Wraps Python's logging with:
    - Structured logging (JSON)
    - Event classification
    - Audit trail support
    """

    def __init__(
        self,
        name: str,
        session: str = "",
        log_dir: Path | None = None,
        enable_json: bool = True,
        enable_console: bool = True,
        level: int = logging.INFO,
        max_audit_entries: int = 10000,
    ):
        """
        Initialise session logger.

        Args:
            name: Logger name (typically module name)
            session: Session name for context
            log_dir: Directory for log files (None = no file logging)
            enable_json: Enable JSON formatted logs (requires log_dir)
            enable_console: Enable console output
            level: Minimum level passed to the handlers
            max_audit_entries: Maximum audit trail entries to retain
        """
        self.name = name
        self.session = session
        self.log_dir = log_dir
        self.enable_json = enable_json

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        self.logger.handlers.clear()

        if enable_console:
            self._add_console_handler(level)

        if enable_json and log_dir:
            self._add_json_handler(level)

        # Audit trail storage (in-memory)
        self.audit_trail: list[LogEntry] = []
        self._audit_lock = asyncio.Lock()
        self._max_audit_entries = max_audit_entries

    def _add_console_handler(self, level: int) -> None:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(UptimeFormatter())
        self.logger.addHandler(handler)

    def _add_json_handler(self, level: int) -> None:
        """Add JSON file handler with rotation."""
        if not self.log_dir:
            return

        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = self.log_dir / f"{self.session or 'uasession'}.json.log"

        # Rotating file handler (10MB max, 5 backups)
        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter(session=self.session))
        self.logger.addHandler(handler)

    def reconfigure(self, level: int, log_dir: Path | None = None) -> None:
        """
        Apply a new handler level and, if not yet present, the JSON file handler.

        Args:
            level: Minimum level passed to the handlers
            log_dir: Directory for log files (None = keep current)
        """
        for handler in self.logger.handlers:
            handler.setLevel(level)

        has_file = any(
            isinstance(h, logging.handlers.RotatingFileHandler) for h in self.logger.handlers
        )
        if log_dir and self.enable_json and not has_file:
            self.log_dir = Path(log_dir)
            self._add_json_handler(level)

    # ----------------------------------------------------------------
    # Standard logging methods
    # ----------------------------------------------------------------

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self.logger.error(message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        self.logger.critical(message, **kwargs)

    def exception(self, message: str, **kwargs) -> None:
        """Log exception with traceback."""
        self.logger.exception(message, **kwargs)

    # ----------------------------------------------------------------
    # Structured logging methods
    # ----------------------------------------------------------------

    async def log_event(
        self,
        severity: EventSeverity,
        category: EventCategory,
        message: str,
        **kwargs,
    ) -> LogEntry:
        """
        Log structured session event.

        Args:
            severity: Event severity level
            category: Event category
            message: Event message
            **kwargs: Additional context (user, endpoint, data, etc.)

        Returns:
            LogEntry that was created
        """
        session = kwargs.pop("session", self.session)

        entry = LogEntry(
            uptime=uptime(),
            wall_time=time.time(),
            severity=severity,
            category=category,
            message=message,
            session=session,
            component=kwargs.pop("component", self.name),
            **kwargs,
        )

        self.logger.log(
            SEVERITY_TO_LOGGING.get(severity, logging.INFO), entry.to_human_readable()
        )

        if category in (EventCategory.AUDIT, EventCategory.SECURITY):
            async with self._audit_lock:
                self.audit_trail.append(entry)
                if len(self.audit_trail) > self._max_audit_entries:
                    self.audit_trail = self.audit_trail[-self._max_audit_entries :]

        return entry

    async def log_audit(
        self, message: str, user: str = "", action: str = "", result: str = "", **kwargs
    ) -> LogEntry:
        """
        Log audit trail event.

        Args:
            message: Audit message
            user: User who performed action
            action: Action performed (register, write, call, ...)
            result: Result of action (OK, FAILED, ...)
            **kwargs: Additional context

        Returns:
            LogEntry that was created
        """
        data = kwargs.get("data", {})
        data.update({"action": action, "result": result})
        kwargs["data"] = data

        return await self.log_event(
            severity=EventSeverity.NOTICE,
            category=EventCategory.AUDIT,
            message=message,
            user=user,
            **kwargs,
        )

    async def log_security(
        self, message: str, severity: EventSeverity = EventSeverity.WARNING, **kwargs
    ) -> LogEntry:
        """Log security event (certificate decisions, identity changes)."""
        return await self.log_event(
            severity=severity,
            category=EventCategory.SECURITY,
            message=message,
            **kwargs,
        )

    # ----------------------------------------------------------------
    # Audit trail access
    # ----------------------------------------------------------------

    async def get_audit_trail(
        self,
        limit: int = 100,
        severity: EventSeverity | None = None,
        category: EventCategory | None = None,
    ) -> list[LogEntry]:
        """
        Get audit trail entries.

        Args:
            limit: Maximum number of entries to return
            severity: Filter by severity
            category: Filter by category

        Returns:
            List of log entries (most recent last)
        """
        async with self._audit_lock:
            entries = self.audit_trail

            if severity:
                entries = [e for e in entries if e.severity == severity]
            if category:
                entries = [e for e in entries if e.category == category]

            return entries[-limit:]


# ----------------------------------------------------------------
# Global logger factory
# ----------------------------------------------------------------

_loggers: dict[str, SessionLogger] = {}
_loggers_lock = threading.Lock()
_default_log_dir: Path | None = None
_default_level: int = logging.INFO


def configure_logging(
    log_dir: Path | str | None = None,
    level: int | str = logging.INFO,
) -> None:
    """
    Configure global logging settings.

    Applies to loggers created after the call and reconfigures the ones
    already handed out by get_logger() (module-level loggers are created
    at import time).

    Args:
        log_dir: Directory for JSON log files
        level: Handler level (int or name such as "DEBUG")
    """
    global _default_log_dir, _default_level

    if log_dir:
        _default_log_dir = Path(log_dir)
        _default_log_dir.mkdir(parents=True, exist_ok=True)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")
    _default_level = level

    with _loggers_lock:
        for session_logger in _loggers.values():
            session_logger.reconfigure(_default_level, _default_log_dir)


def get_logger(name: str, session: str = "", **kwargs) -> SessionLogger:
    """
    Get or create a session logger.

    Thread-safe logger factory.

    Args:
        name: Logger name (typically __name__)
        session: Session name for context
        **kwargs: Additional SessionLogger arguments

    Returns:
        SessionLogger instance
    """
    logger_key = f"{name}:{session}"

    with _loggers_lock:
        if logger_key not in _loggers:
            if "log_dir" not in kwargs and _default_log_dir:
                kwargs["log_dir"] = _default_log_dir
            kwargs.setdefault("level", _default_level)

            _loggers[logger_key] = SessionLogger(name, session, **kwargs)

        return _loggers[logger_key]
