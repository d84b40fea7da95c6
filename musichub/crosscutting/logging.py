import json
import logging
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

ROOT_LOGGER = 'musichub'

user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)

_SECRET_PATTERNS = tuple(re.compile(p) for p in (
    r'(?i)(password|token|key|secret|auth)\s*[:=]\s*["\']?([\w\-.]{10,})["\']?',
    # identity provider session tokens
    r'(?i)(access_token|refresh_token)\s*[:=]\s*["\']?([\w\-.]{20,})["\']?',
    r'(?i)(apikey|anon_key)\s*[:=]\s*["\']?([\w\-.]{20,})["\']?',
    r'(?i)(bearer)\s+([\w\-.]{20,})',
))

_SENSITIVE_KEYS = frozenset({
    'password', 'access_token', 'refresh_token', 'apikey', 'anon_key', 'authorization',
})


class SecretMasker:
    """Redacts credentials from log text and structured fields.

    Masked values keep their first and last four characters so two different
    tokens can still be told apart in a log.
    """

    def __init__(self, patterns=_SECRET_PATTERNS, sensitive_keys=_SENSITIVE_KEYS):
        self.patterns = patterns
        self.sensitive_keys = sensitive_keys

    @staticmethod
    def mask_value(secret: str) -> str:
        hidden = len(secret) - 8
        if hidden <= 0:
            return '*' * len(secret)
        return f"{secret[:4]}{'*' * hidden}{secret[-4:]}"

    def _redact(self, match: 're.Match') -> str:
        return f"{match.group(1)}: {self.mask_value(match.group(2))}"

    def mask_secrets(self, text: str) -> str:
        if not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(self._redact, text)
        return text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask a fields mapping; keys named like credentials are masked whole."""
        if not data:
            return data
        return {key: self._mask_field(key, value) for key, value in data.items()}

    def _mask_field(self, key: Any, value: Any) -> Any:
        if isinstance(value, str):
            if str(key).lower() in self.sensitive_keys:
                return self.mask_value(value)
            return self.mask_secrets(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, (list, tuple)):
            return [self._mask_field(None, item) for item in value]
        return value


def current_correlation() -> Dict[str, str]:
    """Correlation ids bound to the running context, keyed as they appear in entries."""
    pairs = (('userId', user_id_var.get()), ('stage', stage_var.get()))
    return {name: value for name, value in pairs if value}


class StructuredFormatter(logging.Formatter):
    """Renders each record as one JSON object."""

    masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        entry.update(current_correlation())

        fields = getattr(record, 'fields', None)
        if fields:
            entry['fields'] = self.masker.mask_dict(fields)
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class CorrelationContext:
    """Binds a user id and a stage name to every record logged inside the block."""

    def __init__(self, user_id: Optional[str] = None, stage: Optional[str] = None):
        self._bindings = [(var, value) for var, value in ((user_id_var, user_id), (stage_var, stage))
                          if value is not None]
        self._tokens: List[Tuple[ContextVar, Any]] = []

    def __enter__(self) -> 'CorrelationContext':
        self._tokens = [(var, var.set(value)) for var, value in self._bindings]
        return self

    def __exit__(self, *exc_info) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None) -> logging.Logger:
    """Send the package logger to stderr, and optionally a file, as JSON lines."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    formatter = StructuredFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, exc_info: Any = False,
                    **kwargs) -> None:
    """Log message with a structured fields payload (rendered under 'fields')."""
    payload = {**(fields or {}), **kwargs}
    logger.log(logging.getLevelName(level.upper()), message,
               exc_info=exc_info, extra={'fields': payload})


def log_error(logger: logging.Logger, message: str, error: BaseException, **kwargs) -> None:
    """Log an ERROR record carrying the exception type, message and traceback."""
    fields = {'error_type': type(error).__name__, 'error_message': str(error)}
    fields.update(kwargs)
    log_with_fields(logger, 'ERROR', message, fields,
                    exc_info=(type(error), error, error.__traceback__))
