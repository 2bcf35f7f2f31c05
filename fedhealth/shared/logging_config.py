"""
Centralized logging configuration for federated health learning.
Provides structured logging with session and round context.
"""

import logging
import logging.handlers
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional
from pathlib import Path

_CONTEXT_FIELDS = ('session_id', 'round_number', 'participant_id', 'component')


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def __init__(self, extra_fields: Optional[tuple] = None):
        super().__init__()
        self.extra_fields = extra_fields or ()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for field_name in _CONTEXT_FIELDS + tuple(self.extra_fields):
            if hasattr(record, field_name):
                log_entry[field_name] = getattr(record, field_name)

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class FederatedLearningFilter(logging.Filter):
    """Adds the component name to every log record."""

    def __init__(self, component: str):
        super().__init__()
        self.component = component

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = self.component
        return True


def setup_logging(
    component: str,
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_json: bool = True,
    enable_console: bool = True,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up logging for a federated health learning component.

    Handlers are installed on the ``fedhealth`` package logger so every
    module logger under it is captured.

    Args:
        component: Component name (client, coordinator)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files (optional)
        enable_json: Whether to use JSON formatting
        enable_console: Whether to log to console
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep

    Returns:
        Configured component logger
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    root = logging.getLogger("fedhealth")
    root.setLevel(level)
    root.handlers.clear()

    component_filter = FederatedLearningFilter(component)
    text_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(component)s] - %(message)s'
    )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(JSONFormatter() if enable_json else text_formatter)
        console_handler.addFilter(component_filter)
        root.addHandler(console_handler)

    if log_dir:
        log_dir_path = Path(log_dir)
        log_dir_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir_path / f"{component}.log",
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter() if enable_json else text_formatter)
        file_handler.addFilter(component_filter)
        root.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir_path / f"{component}_error.log",
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(JSONFormatter() if enable_json else text_formatter)
        error_handler.addFilter(component_filter)
        root.addHandler(error_handler)

    root.propagate = False

    return logging.getLogger(f"fedhealth.{component}")


def log_federated_event(
    logger: logging.Logger,
    level: str,
    message: str,
    session_id: Optional[str] = None,
    round_number: Optional[int] = None,
    participant_id: Optional[str] = None,
    **kwargs
):
    """
    Log a federated learning event with session context.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, debug)
        message: Log message
        session_id: Session identifier (optional)
        round_number: Training round number (optional)
        participant_id: Participant identifier (optional)
        **kwargs: Additional context fields
    """
    extra: Dict[str, Any] = {}
    if session_id:
        extra['session_id'] = session_id
    if round_number is not None:
        extra['round_number'] = round_number
    if participant_id:
        extra['participant_id'] = participant_id
    extra.update(kwargs)

    getattr(logger, level.lower())(message, extra=extra)


def _structured_logger(name: str, log_dir: Optional[str], file_name: str,
                       console_level: int, fields: tuple) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()

    formatter = JSONFormatter(extra_fields=fields)

    if log_dir:
        log_dir_path = Path(log_dir)
        log_dir_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir_path / file_name,
            maxBytes=50 * 1024 * 1024,
            backupCount=10
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.propagate = False
    return logger


class MetricsLogger:
    """Logger for round and communication metrics."""

    FIELDS = ('metric_type', 'loss', 'total_rounds', 'progress_ratio', 'converged',
              'message_size_bytes', 'latency_ms', 'success', 'attempt')

    def __init__(self, component: str, log_dir: Optional[str] = None, console: bool = False):
        self.component = component
        self.logger = _structured_logger(
            f"fedhealth.{component}.metrics", log_dir, f"{component}_metrics.log",
            logging.INFO if console else logging.CRITICAL + 1, self.FIELDS
        )

    def log_round_metrics(
        self,
        session_id: str,
        round_number: int,
        total_rounds: int,
        loss: float,
        converged: bool = False,
        **kwargs
    ):
        """Log metrics of a completed round."""
        metrics = {
            'metric_type': 'round',
            'session_id': session_id,
            'round_number': round_number,
            'total_rounds': total_rounds,
            'progress_ratio': (round_number + 1) / total_rounds,
            'loss': loss,
            'converged': converged
        }
        metrics.update(kwargs)
        self.logger.info("Round metrics", extra=metrics)

    def log_communication_metrics(
        self,
        session_id: str,
        round_number: int,
        message_size_bytes: int,
        latency_ms: float,
        success: bool = True,
        **kwargs
    ):
        """Log metrics of one exchange with the coordinator."""
        metrics = {
            'metric_type': 'communication',
            'session_id': session_id,
            'round_number': round_number,
            'message_size_bytes': message_size_bytes,
            'latency_ms': latency_ms,
            'success': success
        }
        metrics.update(kwargs)
        self.logger.info("Communication metrics", extra=metrics)


class AuditLogger:
    """Logger for privacy, security and session lifecycle events."""

    FIELDS = ('event_type', 'severity', 'details', 'privacy_params', 'status', 'reason')

    def __init__(self, component: str, log_dir: Optional[str] = None):
        self.component = component
        self.logger = _structured_logger(
            f"fedhealth.{component}.audit", log_dir, f"{component}_audit.log",
            logging.WARNING, self.FIELDS
        )

    def log_privacy_event(self, event_type: str, session_id: str, round_number: int,
                          privacy_params: Dict[str, Any]):
        """Log a privacy disclosure or privacy-related event."""
        self.logger.info("Privacy event", extra={
            'event_type': f'privacy_{event_type}',
            'session_id': session_id,
            'round_number': round_number,
            'privacy_params': privacy_params
        })

    def log_security_event(self, event_type: str, severity: str, details: Dict[str, Any]):
        """Log a security event."""
        log_level = logging.WARNING if severity == 'high' else logging.INFO
        self.logger.log(log_level, "Security event", extra={
            'event_type': f'security_{event_type}',
            'severity': severity,
            'details': details
        })

    def log_session_event(self, session_id: str, status: str, reason: str = ""):
        """Log a session lifecycle transition."""
        self.logger.info("Session event", extra={
            'event_type': 'session_status',
            'session_id': session_id,
            'status': status,
            'reason': reason
        })


def configure_logging_from_config(config: Dict[str, Any], component: str) -> logging.Logger:
    """
    Configure logging from a configuration dictionary.

    Args:
        config: Configuration dictionary
        component: Component name

    Returns:
        Configured logger
    """
    logging_config = config.get('logging', {})

    return setup_logging(
        component=component,
        log_level=logging_config.get('level', 'INFO'),
        log_dir=logging_config.get('log_dir'),
        enable_json=logging_config.get('enable_json', True),
        enable_console=logging_config.get('enable_console', True),
        max_file_size=logging_config.get('max_file_size', 10 * 1024 * 1024),
        backup_count=logging_config.get('backup_count', 5)
    )
