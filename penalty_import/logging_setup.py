"""
Logging configuration for imports and the API.

Log files are JSON lines (python-json-logger). Every record carries the id of
the import run it belongs to, and personal identifiers from the workbook are
masked before a record reaches any handler.
"""

import contextvars
import logging
import re
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional
from pythonjsonlogger import jsonlogger

_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('penalty_import_run_id', default=None)

JSON_FIELDS = '%(timestamp)s %(levelname)s %(name)s %(run_id)s %(message)s'
TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(run_id)s] %(message)s'
CONSOLE_FORMAT = '%(levelname)s - %(name)s - %(message)s'


@contextmanager
def run_context(run_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with an import run id."""
    token = _run_id.set(run_id)
    try:
        yield
    finally:
        _run_id.reset(token)


class RunContextFilter(logging.Filter):
    """Adds the current run id (or '-') to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id.get() or '-'
        return True


class RedactingFilter(logging.Filter):
    """
    Masks personal data and credentials in log messages.

    Values are replaced in place so the rest of the message stays readable:
    national ids, mobile numbers, bearer tokens and key=value pairs for
    secret-looking keys. An 11-digit number is only treated as a national id
    after a label such as "TCKN" or "kimlik no", so penalty numbers stay
    visible. Mobile numbers are matched anywhere, which also masks a
    10-digit penalty number starting with 5.
    """

    SECRET_KEYS = ('password', 'token', 'secret', 'tckn', 'national_id', 'telno', 'phone')

    PATTERNS = [
        (re.compile(r'(?i)\bbearer\s+[\w\-.~+/]+=*'), 'Bearer [REDACTED]'),
        (re.compile(r'(?i)\b(%s)\s*[=:]\s*\S+' % '|'.join(SECRET_KEYS)), r'\1=[REDACTED]'),
        (re.compile(r'(?i)\b(tckn|tc\s*kimlik(?:\s*no)?|tc\s*no|kimlik\s*no|national[_ ]id)(\W{1,3})[1-9]\d{10}(?!\d)'),
         r'\1\2[TCKN]'),
        (re.compile(r'(?<!\d)(?:\+?90|0)?5\d{9}(?!\d)'), '[PHONE]'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = message
        for pattern, replacement in self.PATTERNS:
            redacted = pattern.sub(replacement, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def _attach(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.addFilter(RunContextFilter())
    handler.addFilter(RedactingFilter())
    handler.setFormatter(formatter)
    logging.getLogger().addHandler(handler)
    return handler


def setup_logging(
    log_dir: Path,
    log_level: str = "INFO",
    json_format: bool = True,
    console_output: bool = True,
) -> Path:
    """
    Configure root logging for a CLI or server process.

    Replaces any handlers already installed on the root logger.

    Args:
        log_dir: Directory for the log file (created if missing)
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines in the log file, plain text otherwise
        console_output: Also log to stdout

    Returns:
        Path of the log file
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"penalty_import_{datetime.now():%Y%m%d_%H%M%S}.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if json_format:
        file_formatter = jsonlogger.JsonFormatter(JSON_FIELDS, timestamp=True, json_ensure_ascii=False)
    else:
        file_formatter = logging.Formatter(TEXT_FORMAT)
    _attach(logging.FileHandler(log_file, encoding='utf-8'), level, file_formatter)

    if console_output:
        _attach(logging.StreamHandler(sys.stdout), level, logging.Formatter(CONSOLE_FORMAT))

    root_logger.info(f"Logging initialized: {log_file}")
    return log_file


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
