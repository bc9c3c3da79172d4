"""
Structured JSON Logging Configuration

Every record is emitted as one JSON object carrying the storage context it
was logged in:
- request_id: correlation id of the HTTP request (or "-")
- storage_key: the key the current lookup resolved to, once known
- breaker_state: state of the read-path circuit breaker as last seen by
  this task

The values live in contextvars, so concurrent requests and repair workers
never see each other's context.
"""
import contextvars
import logging
import logging.handlers
import os
from datetime import datetime, timezone
from typing import Optional

from pythonjsonlogger import jsonlogger

from thumbkeeper.core.config import settings

request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'request_id', default=None
)
storage_key_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'storage_key', default=None
)
breaker_state_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'breaker_state', default=None
)

LOG_FORMAT = '%(timestamp)s %(level)s %(name)s %(message)s'
MAX_LOG_VALUE_LENGTH = 10000

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ('uvicorn.access', 'botocore', 'boto3', 'urllib3', 'apscheduler')


def _flatten(value: str) -> str:
    return value.replace('\r\n', ' ').replace('\n', ' ').replace('\r', ' ')


class StorageContextFilter(logging.Filter):
    """Copies request and storage context from contextvars onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        record.storage_key = storage_key_var.get()
        record.breaker_state = breaker_state_var.get()
        return True


class SanitizingFilter(logging.Filter):
    """
    Flattens CR/LF in messages and string arguments.

    Storage keys and file references come straight from URLs, so a crafted
    reference could otherwise forge extra log lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _flatten(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(_flatten(arg) if isinstance(arg, str) else arg for arg in record.args)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding standard and storage fields.

    Output format:
    {
        "timestamp": "2025-11-23T10:30:00.000Z",
        "level": "INFO",
        "message": "Resolved clip.mov to shared/uploads/clip.mov",
        "logger": "thumbkeeper.services.key_resolver",
        "request_id": "uuid-here",
        "storage_key": "shared/uploads/clip.mov",
        "breaker_state": "closed",
        ...extra fields...
    }

    storage_key and breaker_state are omitted when no lookup has set them.
    An explicit `key` extra wins over the context value for storage_key.
    """

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.now(timezone.utc).isoformat()

        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['request_id'] = getattr(record, 'request_id', '-')

        storage_key = log_record.get('key') or getattr(record, 'storage_key', None)
        if storage_key:
            log_record['storage_key'] = storage_key
        else:
            log_record.pop('storage_key', None)

        breaker_state = getattr(record, 'breaker_state', None)
        if breaker_state:
            log_record['breaker_state'] = breaker_state
        else:
            log_record.pop('breaker_state', None)

        if 'message' not in log_record:
            log_record['message'] = record.getMessage()


def _attach(
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
    root_logger: logging.Logger,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(StorageContextFilter())
    handler.addFilter(SanitizingFilter())
    root_logger.addHandler(handler)


def setup_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """
    Configure JSON logging to the console, app.log and error.log.

    Args:
        log_level: Override log level (default from settings.LOG_LEVEL)
        log_dir: Override log directory (default from settings.LOG_DIR)

    Returns:
        The configured root logger
    """
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    directory = log_dir or settings.LOG_DIR
    os.makedirs(directory, exist_ok=True)

    formatter = CustomJsonFormatter(LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    _attach(logging.StreamHandler(), level, formatter, root_logger)
    # 100MB x 7 for everything, 50MB x 5 for errors only
    _attach(
        logging.handlers.RotatingFileHandler(
            os.path.join(directory, 'app.log'),
            maxBytes=100 * 1024 * 1024,
            backupCount=7,
            encoding='utf-8',
        ),
        level, formatter, root_logger,
    )
    _attach(
        logging.handlers.RotatingFileHandler(
            os.path.join(directory, 'error.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8',
        ),
        logging.ERROR, formatter, root_logger,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_request_id(request_id: str) -> contextvars.Token:
    """
    Set the request ID for the current context.

    Returns:
        Token for clear_request_id
    """
    return request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def clear_request_id(token: contextvars.Token) -> None:
    request_id_var.reset(token)


def set_storage_key(key: Optional[str]) -> None:
    """Record the key the current lookup resolved to (None while resolving)."""
    storage_key_var.set(key)


def set_breaker_state(state: str) -> None:
    breaker_state_var.set(state)


def sanitize_log_value(value: str) -> str:
    """
    Flatten and truncate a client-supplied value before putting it in a message.

    Example:
        >>> sanitize_log_value("clip.mov\\nforged")
        'clip.mov forged'
    """
    if not isinstance(value, str):
        return str(value)

    sanitized = _flatten(value)
    if len(sanitized) > MAX_LOG_VALUE_LENGTH:
        sanitized = sanitized[:MAX_LOG_VALUE_LENGTH] + '...[truncated]'
    return sanitized
