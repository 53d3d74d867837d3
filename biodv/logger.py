"""Package wide logging for biodv.

Commands in biodv are batch operations over many taxa: a problem with one name is
reported and processing carries on. This submodule provides the logging objects that
support that way of working:

* Log records gain a one character `levelcode` attribute, so that reports read as a
  column of codes (`-` info, `?` warning, `!` error) rather than level names.

* The [IndentFormatter][biodv.logger.IndentFormatter] nests messages, so that the
  passes of a synchronization and the taxa handled in each pass can be followed in a
  long report.

* The handlers count the records emitted at each level. A command uses
  [get_handler][biodv.logger.get_handler] at the end of a run to decide whether it
  failed.

* Output goes either to `stderr`, keeping `stdout` free for the primary output of a
  command, or to a log file. The [use_stream_logging][biodv.logger.use_stream_logging]
  and [use_file_logging][biodv.logger.use_file_logging] functions switch between the
  two.

* [log_and_raise][biodv.logger.log_and_raise] and
  [loggerinfo_push_pop][biodv.logger.loggerinfo_push_pop] cut down the logging
  boilerplate in the rest of the package.
"""  # noqa D415

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

LOGGER_CODES = {
    "DEBUG": ">",
    "INFO": "-",
    "WARNING": "?",
    "ERROR": "!",
    "CRITICAL": "X",
}

STREAM_HANDLER = "biodv_stream_log"
FILE_HANDLER = "biodv_file_log"


_base_factory = logging.getLogRecordFactory()


def record_factory(*args, **kwargs):
    """Create log records carrying the one character code of their level."""
    record = _base_factory(*args, **kwargs)
    record.levelcode = LOGGER_CODES.get(record.levelname, " ")
    return record


logging.setLogRecordFactory(record_factory)


class _CounterMixin:
    """Level counting shared by the package handlers.

    The mixin must come before the `logging.Handler` subclass in the bases, so that
    its `emit` counts the record before handing it on.
    """

    counters: dict[str, int]

    def reset(self) -> None:
        """Set all the level counters back to zero."""
        self.counters = dict.fromkeys(LOGGER_CODES, 0)

    @property
    def problems(self) -> int:
        """The number of error and critical records emitted since the last reset."""
        return self.counters["ERROR"] + self.counters["CRITICAL"]

    def emit(self, record: logging.LogRecord) -> None:
        self.counters[record.levelname] = self.counters.get(record.levelname, 0) + 1
        super().emit(record)  # type: ignore[misc]


class StreamCounterHandler(_CounterMixin, logging.StreamHandler):
    """A `logging.StreamHandler` that counts the records emitted at each level."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.reset()


class FileCounterHandler(_CounterMixin, logging.FileHandler):
    """A `logging.FileHandler` that counts the records emitted at each level."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.reset()


class IndentFormatter(logging.Formatter):
    """A log formatter that indents messages by a nesting depth.

    Each level of depth prefixes the message with one copy of `indent`. The depth can
    be set directly, but the [push][biodv.logger.IndentFormatter.push] and
    [pop][biodv.logger.IndentFormatter.pop] methods are more convenient when entering
    and leaving a stage of an operation.

    A record logged with `extra={"join": values}` has the `repr` of each value
    appended to the message as a comma separated list. The candidates of an ambiguous
    name are reported this way.

    Args:
        fmt: The format used for the body of each message
        datefmt: A date format string
        indent: The string added to the start of a message for each level of depth
    """

    def __init__(
        self,
        fmt: str = "%(levelcode)s %(message)s",
        datefmt: str | None = None,
        indent: str = "    ",
    ) -> None:
        super().__init__(fmt, datefmt)
        self.depth = 0
        self.indent = indent

    def push(self, n: int = 1) -> None:
        """Nest the following messages n levels deeper."""
        self.depth += n

    def pop(self, n: int = 1) -> None:
        """Move the following messages n levels out, stopping at zero depth."""
        self.depth = max(0, self.depth - n)

    def format(self, rec: logging.LogRecord) -> str:
        """Format a record with its level code, indent and any joined values.

        Args:
            rec: The logging record to be formatted.
        """
        body = super().format(rec)
        joined = getattr(rec, "join", None)
        if joined is not None:
            body += ", ".join(repr(value) for value in joined)

        return f"{self.indent * self.depth}{body}"


LOGGER = logging.getLogger(__name__)
"""logging.Logger: The biodv Logger instance

All modules of the package report progress and problems through this logger.
"""


FORMATTER = IndentFormatter()
"""IndentFormatter: The biodv message formatter

Shared by the package handlers, so that any module can change the indent depth with
`FORMATTER.push()` and `FORMATTER.pop()`.
"""


def _find_handler(name: str) -> logging.Handler | None:
    return next((hdlr for hdlr in LOGGER.handlers if hdlr.name == name), None)


def _drop_handler(name: str) -> None:
    handler = _find_handler(name)
    if handler is not None:
        handler.close()
        LOGGER.removeHandler(handler)


def _attach_handler(handler: logging.Handler, name: str, level: int) -> None:
    handler.name = name
    handler.setFormatter(FORMATTER)
    LOGGER.addHandler(handler)
    LOGGER.setLevel(level)


def use_file_logging(filename: Path, level: int = logging.DEBUG) -> None:
    """Send the package log to a file instead of `stderr`.

    Any stream handler is closed and removed before the file handler is added.

    Args:
        filename: The path of the log file.
        level: The lowest logging level to be recorded in the file.

    Raises:
        RuntimeError: If the package is already logging to a file. The current file
            handler must be removed before logging to a different file.
    """

    current = _find_handler(FILE_HANDLER)
    if current is not None:
        raise RuntimeError(f"Already logging to file: {current.baseFilename}")

    _drop_handler(STREAM_HANDLER)
    _attach_handler(FileCounterHandler(filename=filename), FILE_HANDLER, level)


def use_stream_logging(level: int = logging.DEBUG) -> None:
    """Send the package log to `stderr`.

    Any file handler is closed and removed. Calling this when a stream handler is
    already in place only updates the logging level.

    Args:
        level: The lowest logging level to be emitted.
    """

    _drop_handler(FILE_HANDLER)

    if _find_handler(STREAM_HANDLER) is not None:
        LOGGER.setLevel(level)
        return

    _attach_handler(StreamCounterHandler(), STREAM_HANDLER, level)


use_stream_logging()


def get_handler():
    """Return the handler currently used by the package logger."""
    return _find_handler(FILE_HANDLER) or _find_handler(STREAM_HANDLER)


def log_and_raise(
    msg: str, exception: type[Exception], extra: dict | None = None
) -> None:
    """Log a critical message and raise an exception with the same message.

    This is used for problems that stop a command entirely, such as misconfigured
    resources or an unreadable store. Problems with a single taxon are logged as
    errors and processing carries on.

    Args:
        msg: The message to log and raise
        exception: The type of the exception to raise
        extra: Extra information passed on to the logger
    """

    LOGGER.critical(msg, extra=extra)
    raise exception(msg)


def loggerinfo_push_pop(wrapper_message: str) -> Callable:
    """Decorate a function to log an info message and indent the logging it emits.

    The indent depth is restored when the function returns or raises.

    Args:
        wrapper_message: The text of the info message.
    """

    def decorator_func(function: Callable) -> Callable:
        @wraps(function)
        def wrapped_func(*args, **kwargs: Any):
            LOGGER.info(wrapper_message)
            FORMATTER.push()
            try:
                return function(*args, **kwargs)
            finally:
                FORMATTER.pop()

        return wrapped_func

    return decorator_func
