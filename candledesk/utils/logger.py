import io
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S.%f"

_MAX_LOG_BYTES = 5_000_000
_LOG_BACKUPS = 5


class DotMsFormatter(logging.Formatter):
    """Formats ``%f`` in the date format as milliseconds."""

    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        ms = f"{int(record.msecs):03d}"
        if datefmt:
            return ct.strftime(datefmt.replace("%f", ms))
        return ct.strftime("%Y-%m-%d %H:%M:%S") + f".{ms}"


def parse_level(name: str, default: int = logging.INFO) -> int:
    return getattr(logging, str(name).upper(), default)


def setup_logger(name: str, log_path: str | Path, level: int = logging.INFO) -> logging.Logger:
    """
    Configure *name* with a UTF-8 console handler and a rotating file
    handler at *log_path*.  Calling it again for the same logger replaces
    its handlers instead of stacking duplicates.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = DotMsFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Force UTF-8 on the console; Windows defaults to cp1252.
    if hasattr(sys.stdout, "buffer"):
        utf8_stream = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    else:
        utf8_stream = sys.stdout
    ch = logging.StreamHandler(utf8_stream)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    fh = RotatingFileHandler(log_path, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    return logger
