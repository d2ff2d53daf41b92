# logging_config.py

import json
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

TRADE = 25
SUCCESS = 26

# Fields callers may attach through ``extra=``; copied onto JSON records when present.
CONTEXT_FIELDS = ('venue', 'opportunity_id', 'pair')


def setup_custom_log_levels():
    """
    Registers the TRADE and SUCCESS levels and the matching ``Logger.trade`` /
    ``Logger.success`` methods. Safe to call more than once; the app, get_logger()
    and the test suite all call it.
    """
    for level, name in ((TRADE, 'TRADE'), (SUCCESS, 'SUCCESS')):
        if not hasattr(logging, name):
            logging.addLevelName(level, name)
            setattr(logging, name, level)

    def trade(self, message, *args, **kws):
        if self.isEnabledFor(TRADE):
            self._log(TRADE, message, args, **kws)

    def success(self, message, *args, **kws):
        if self.isEnabledFor(SUCCESS):
            self._log(SUCCESS, message, args, **kws)

    if not hasattr(logging.Logger, 'trade'):
        logging.Logger.trade = trade
    if not hasattr(logging.Logger, 'success'):
        logging.Logger.success = success


def get_logger(name: str) -> logging.Logger:
    setup_custom_log_levels()
    return logging.getLogger(name)


class SessionContextFilter(logging.Filter):
    """Stamps every record with the id of the bot session that produced it."""

    def __init__(self, session_id: str):
        super().__init__()
        self.session_id = session_id

    def filter(self, record):
        if not hasattr(record, 'session_id'):
            record.session_id = self.session_id
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with session and trade context when the record carries it."""

    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "session_id": getattr(record, 'session_id', None),
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineNo": record.lineno,
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_object[key] = str(value)
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(log_object)


def setup_logging(level: str = "INFO", log_dir: Optional[str] = "logs", session_id: Optional[str] = None,
                  quiet_loggers: Iterable[str] = ("ccxt", "httpx", "httpcore")) -> str:
    """
    Routes the root logger to the console and, when ``log_dir`` is set, to a
    rotating text log and a rotating JSON log. Returns the session id stamped
    on every record.
    """
    setup_custom_log_levels()
    session_id = session_id or uuid.uuid4().hex[:8]

    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()

    context = SessionContextFilter(session_id)
    text_formatter = logging.Formatter('%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s')
    handlers = [logging.StreamHandler()]
    handlers[0].setFormatter(text_formatter)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        max_bytes = 5 * 1024 * 1024
        text_file = RotatingFileHandler(os.path.join(log_dir, 'arbitrage_bot.log'), maxBytes=max_bytes, backupCount=2)
        text_file.setFormatter(text_formatter)
        json_file = RotatingFileHandler(os.path.join(log_dir, 'arbitrage_bot_structured.log'), maxBytes=max_bytes,
                                        backupCount=2)
        json_file.setFormatter(JsonFormatter())
        handlers.extend([text_file, json_file])

    for handler in handlers:
        handler.addFilter(context)
        root.addHandler(handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(f"Logging configured for session {session_id} (level {logging.getLevelName(root.level)}, "
              f"files in {log_dir or 'none'}).")
    return session_id
