import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import colorlog

from clanhub.utils.constants import LOG_DIR

LOG_FILES = (
    ('clanhub.log', logging.DEBUG),
    ('error.log', logging.ERROR),
)
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

class JSONFormatter(logging.Formatter):
    """One JSON object per record, with any request context attached"""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': self.formatTime(record, self.datefmt),
            'name': record.name,
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)
        context = getattr(record, 'context', None)
        if context:
            data['context'] = context
        return json.dumps(data, default=str)

def _console_handler(level) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(colorlog.ColoredFormatter(
        '%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        },
    ))
    handler.setLevel(level)
    return handler

def setup_logging(level: Optional[str] = None,
                  json_logging: bool = False,
                  log_dir: Optional[Path] = None) -> None:
    """Console plus rotating file logging; safe to call again once settings are loaded"""
    level = level or logging.INFO
    log_directory = log_dir or LOG_DIR
    log_directory.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(_console_handler(level))

    file_formatter = JSONFormatter() if json_logging else logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s'
    )
    for filename, file_level in LOG_FILES:
        handler = logging.handlers.RotatingFileHandler(
            log_directory / filename,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding='utf-8',
        )
        handler.setFormatter(file_formatter)
        handler.setLevel(file_level)
        root_logger.addHandler(handler)

    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)

    logger = logging.getLogger('ClanHub')
    logger.setLevel(level)

    def log_uncaught(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = log_uncaught
    logger.info(f"Logging to {log_directory} (json={json_logging})")

class LoggerAdapter(logging.LoggerAdapter):
    """Attaches request/actor context to every record"""

    def process(self, msg: str, kwargs: Dict[str, Any]):
        extra = kwargs.get('extra', {})
        context = dict(self.extra)
        context.setdefault('timestamp', datetime.now(timezone.utc).isoformat())
        extra['context'] = context
        kwargs['extra'] = extra
        return msg, kwargs

def get_logger(name: str, **context):
    """Child of the ClanHub logger, wrapped in a LoggerAdapter when context is given"""
    logger = logging.getLogger(f'ClanHub.{name}')
    if context:
        return LoggerAdapter(logger, context)
    return logger
