import logging
import os
import re
import sys
from typing import Optional


class ContentPayloadFilter(logging.Filter):
    """Filter to shorten base64 file content embedded in log records."""

    MAX_CONTENT_CHARS = 64

    PATTERNS = [
        re.compile(r'(["\']?content["\']?\s*[:=]\s*["\']?)([A-Za-z0-9+/=]{64,})', re.IGNORECASE),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Truncate file content in the log message."""
        if isinstance(record.msg, str):
            record.msg = self._truncate(record.msg)

        if hasattr(record, 'args') and record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._truncate_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._truncate_value(arg) for arg in record.args)

        return True

    def _truncate(self, text: str) -> str:
        for pattern in self.PATTERNS:
            text = pattern.sub(self._shorten_match, text)
        return text

    def _shorten_match(self, match: re.Match) -> str:
        content = match.group(2)
        return f"{match.group(1)}{content[:self.MAX_CONTENT_CHARS]}...<{len(content)} chars>"

    def _truncate_value(self, value):
        """Truncate content inside string arguments."""
        if isinstance(value, str):
            return self._truncate(value)
        return value


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration for a component.

    Args:
        component_name: Name of the component (e.g., 'hub', 'edge', 'common')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')

    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    handler.addFilter(ContentPayloadFilter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
