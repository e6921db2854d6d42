"""
Logging utilities: structured JSON output and redaction of credentials.

Example:
    from cgm_link.utils.logging_utils import redact_sensitive_data
    safe = redact_sensitive_data({'refresh_token': 'abc', 'user_id': 'bob'})
    # safe == {'refresh_token': '***REDACTED***', 'user_id': 'bob'}
"""

import json
import logging
from datetime import datetime, timezone

SENSITIVE_KEYS = {
    'password', 'api_key', 'token', 'secret', 'access_token', 'refresh_token',
    'client_secret', 'authorization', 'code', 'authorizationcode', 'key',
}

REDACTED = '***REDACTED***'

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_RECORD_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


def redact_sensitive_data(obj):
    """
    Recursively redacts sensitive fields in dicts/lists.
    Keys are matched case-insensitively against SENSITIVE_KEYS.
    """
    if isinstance(obj, dict):
        return {
            k: (REDACTED if str(k).lower() in SENSITIVE_KEYS else redact_sensitive_data(v))
            for k, v in obj.items()
        }
    elif isinstance(obj, list):
        return [redact_sensitive_data(i) for i in obj]
    else:
        return obj


class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON with standard fields plus any `extra` fields.
    """
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        extra = {
            key: value for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith('_')
        }
        log_record.update(redact_sensitive_data(extra))
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def setup_json_logging(level=logging.INFO, output='stdout', file_path=None):
    """
    Set up structured JSON logging for the app.

    Args:
        level: Logging level (default: INFO)
        output: 'stdout' or 'file'
        file_path: Path to log file if output is 'file'
    """
    logger = logging.getLogger()
    logger.setLevel(level)
    for h in list(logger.handlers):
        logger.removeHandler(h)
    if output == 'file' and file_path:
        handler = logging.FileHandler(file_path)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    return logger
