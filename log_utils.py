# log_utils.py
# File-backed loggers for the mailer. Writing a log line must never raise into callers.

import logging
import os

from mailer_config import LOG_FILE

_DEF_FMT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"


class SilentFileHandler(logging.FileHandler):
    """
    Append-only file handler that drops records it cannot write.
    """
    def __init__(self, filename):
        super().__init__(filename, mode="a", encoding="utf-8", delay=True)

    def emit(self, record):
        try:
            directory = os.path.dirname(self.baseFilename)
            if directory and not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
            # FileHandler opens the stream lazily, outside its own error handling.
            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record):
        # Best-effort sink: failures are not reported.
        pass


def get_logger(name, filename=None):
    """
    Returns a namespaced logger appending timestamped lines to the mailer log file.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logfile = os.path.abspath(filename or LOG_FILE)

    already_configured = any(
        isinstance(handler, SilentFileHandler) and handler.baseFilename == logfile
        for handler in logger.handlers
    )
    if not already_configured:
        handler = SilentFileHandler(logfile)
        handler.setFormatter(logging.Formatter(_DEF_FMT, datefmt=_DATE_FMT))
        logger.addHandler(handler)
    return logger
