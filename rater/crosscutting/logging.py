import json
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variables for correlation
mode_var: ContextVar[Optional[str]] = ContextVar('mode', default=None)
provider_var: ContextVar[Optional[str]] = ContextVar('provider', default=None)
track_id_var: ContextVar[Optional[str]] = ContextVar('track_id', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # OAuth access and refresh tokens
            r'(?i)(access_token|refresh_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # PKCE verifiers
            r'(?i)(code_verifier|verifier)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.~]{20,})["\']?',
            # OAuth codes
            r'(?i)(code|authorization_code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
        ]

        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text

        for pattern in self.compiled_patterns:
            def replace_match(match):
                prefix = match.group(1)
                secret = match.group(2)
                # Keep first 4 and last 4 characters, mask the rest
                if len(secret) > 8:
                    masked_secret = secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
                else:
                    masked_secret = '*' * len(secret)
                return f"{prefix}: {masked_secret}"

            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary values."""
        if not data:
            return data

        masked_data = {}

        for key, value in data.items():
            if isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        """Initialize formatter."""
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add correlation fields if available
        mode = mode_var.get()
        provider = provider_var.get()
        track_id = track_id_var.get()
        stage = stage_var.get()
        if mode:
            log_entry['mode'] = mode
        if provider:
            log_entry['provider'] = provider
        if track_id:
            log_entry['trackId'] = track_id
        if stage:
            log_entry['stage'] = stage

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'fields') and record.fields:
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False)

    def mask_secrets(self, text: str) -> str:
        """Mask secrets in text."""
        return self.masker.mask_secrets(text)


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, mode: Optional[str] = None,
                 provider: Optional[str] = None,
                 track_id: Optional[str] = None,
                 stage: Optional[str] = None):
        """Initialize correlation context."""
        self._values = {
            mode_var: mode,
            provider_var: provider,
            track_id_var: track_id,
            stage_var: stage,
        }
        self._tokens = []

    def __enter__(self):
        """Set correlation context."""
        for var, value in self._values.items():
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  structured: bool = True) -> logging.Logger:
    """Setup logging for the 'rater' logger tree."""
    logger = logging.getLogger('rater')
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler
        # Rotate at ~10MB with a week of backups
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=7)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = 'rater') -> logging.Logger:
    """Get logger with structured formatting."""
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, exc_info: Any = False, **kwargs):
    """Log message with additional fields."""
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(levelno, message, extra={'fields': merged}, exc_info=exc_info)


# Convenience functions for common logging patterns
def log_auth_change(logger: logging.Logger, provider: str, authorized: bool, reason: str, **kwargs):
    """Log a change of a provider's authorization."""
    with CorrelationContext(provider=provider, stage='auth'):
        log_with_fields(logger, 'INFO', 'Authorization changed', {
            'authorized': authorized,
            'reason': reason,
            **kwargs
        })


def log_engine_start(logger: logging.Logger, mode: str, **kwargs):
    """Log engine activation."""
    with CorrelationContext(mode=mode, stage='start'):
        log_with_fields(logger, 'INFO', 'Sync engine started', kwargs)


def log_rating_saved(logger: logging.Logger, track_id: str, rating: float, created: bool, **kwargs):
    """Log a persisted rating."""
    with CorrelationContext(track_id=track_id, stage='rating'):
        log_with_fields(logger, 'INFO', 'Rating saved', {
            'rating': rating,
            'created': created,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }, exc_info=error if error.__traceback__ is not None else False)
