"""
Logging utility module for the relay.

Provides JSON-structured logging with run ID propagation so every line
emitted during one relay run can be correlated.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional, Union

# Context variable for run ID propagation
_run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)

# Attributes present on every LogRecord; anything else came in via ``extra=``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime', 'taskName'
}


def get_run_id() -> Optional[str]:
    """Get the current run ID from context."""
    return _run_id.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set run ID in context.

    Args:
        run_id: Optional run ID. If None, generates a new UUID.

    Returns:
        The run ID that was set
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    _run_id.set(run_id)
    return run_id


def clear_run_id():
    """Clear the run ID from context."""
    _run_id.set(None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as a single JSON line.

        Fields passed through ``extra=`` are merged into the top-level object.
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        run_id = get_run_id()
        if run_id:
            log_data['run_id'] = run_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(level: Union[int, str] = logging.INFO, json_output: bool = True) -> logging.Logger:
    """Configure the root logger once for the process.

    Args:
        level: Logging level name or number
        json_output: Emit JSON lines when True, plain text otherwise

    Returns:
        The root logger
    """
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root.setLevel(level)

    # Replace handlers so repeated calls don't duplicate output
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root.addHandler(handler)

    # pymongo logs every heartbeat at DEBUG
    logging.getLogger('pymongo').setLevel(max(level, logging.INFO))
    return root


class RunContext:
    """Context manager for run ID propagation."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        self._previous_id = get_run_id()
        return set_run_id(self.run_id)

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous_id is not None:
            set_run_id(self._previous_id)
        else:
            clear_run_id()
