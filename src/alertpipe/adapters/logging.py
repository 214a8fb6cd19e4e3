"""Bridge from the standard library logging module to event storage.

Every log record emitted by alertpipe (rule failures, firing alerts,
delivery attempts) becomes a LogEntry in a LogStoragePort, which the HTTP
surface serves at ``/logs``.
"""

import logging
import sys
import traceback

from alertpipe.core.models import LogEntry
from alertpipe.core.ports import LogStoragePort

# Standard LogRecord attributes that should not be treated as extra fields
_STANDARD_LOGRECORD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)

_DEFAULT_INCLUDE_ATTRS = ["logger"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EventLogHandler(logging.Handler):
    """Logging handler that writes log records to a LogStoragePort.

    Example:
        ```python
        storage = RingBufferLogStorage(max_size=1000)
        logging.getLogger("alertpipe").addHandler(EventLogHandler(storage))
        ```
    """

    def __init__(
        self,
        storage: LogStoragePort,
        include_attrs: list[str] | None = None,
        level: int = logging.NOTSET,
    ) -> None:
        """Initialize the handler with a log storage backend.

        Args:
            storage: Storage adapter implementing LogStoragePort.
            include_attrs: LogRecord attributes to copy into the entry, out of
                "logger", "funcName", "lineno" and "pathname". Defaults to
                ["logger"].
            level: Minimum level handled.
        """
        super().__init__(level)
        self._storage = storage
        self._include_attrs = include_attrs or _DEFAULT_INCLUDE_ATTRS

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._storage.write(self.to_entry(record))
        except Exception:
            self.handleError(record)

    def to_entry(self, record: logging.LogRecord) -> LogEntry:
        """Convert a log record into a LogEntry."""
        attr_mapping: dict[str, str | int | float | bool] = {
            "logger": record.name,
            "funcName": record.funcName or "",
            "lineno": record.lineno,
            "pathname": record.pathname,
        }
        attributes: dict[str, str | int | float | bool] = {
            key: attr_mapping[key] for key in self._include_attrs if key in attr_mapping
        }

        # Extra fields passed via logging call
        for key, value in record.__dict__.items():
            if key in _STANDARD_LOGRECORD_ATTRS or key.startswith("_"):
                continue
            if isinstance(value, (str, int, float, bool)):
                attributes[key] = value
            elif value is not None:
                attributes[key] = str(value)

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            if exc_type is not None:
                attributes["exc_type"] = exc_type.__name__
            if exc_value is not None:
                attributes["exc_message"] = str(exc_value)
            if exc_tb is not None:
                attributes["exc_traceback"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )

        return LogEntry(
            timestamp=record.created,
            level=record.levelname,
            message=record.getMessage(),
            attributes=attributes,
        )


def configure_logging(
    level: str | int = "INFO",
    storage: LogStoragePort | None = None,
    logger_name: str = "alertpipe",
) -> logging.Logger:
    """Attach a stderr stream handler and, optionally, an EventLogHandler.

    Calling it again replaces the handlers it installed previously.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    for handler in list(logger.handlers):
        if getattr(handler, "_alertpipe_installed", False):
            logger.removeHandler(handler)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers: list[logging.Handler] = [stream]
    if storage is not None:
        handlers.append(EventLogHandler(storage))
    for handler in handlers:
        handler._alertpipe_installed = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.propagate = False
    return logger
