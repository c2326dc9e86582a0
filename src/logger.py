import logging
import logging.handlers
import os
from pathlib import Path

# Third party loggers that drown out our own output below their given level.
NOISY_LOGGERS = ["sqlalchemy",
                 "alembic",
                 "aiosqlite",
                 "asyncio",
                 "apscheduler",
                 "spotipy",
                 "urllib3"]

class NoisyLoggerFilter(logging.Filter):
    def __init__(self, min_level: int):
        super().__init__()
        self.min_level = min_level

    def filter(self, record):
        if not record.name.startswith(tuple(NOISY_LOGGERS)): return True
        return record.levelno >= self.min_level


def setup_logging(log_path: str = None, console_level=logging.INFO):
    """
    Console + rotating file logging on the root logger, call once from an entry point.
    The file gets everything down to debug (third party from info), the console
    gets `console_level` (third party from warning).
    """
    if log_path is None:
        log_path = f"{'test_logs' if os.getenv('TEST_MODE') else 'logs'}/listenlog.log"
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s [%(name)s-%(funcName)s:%(lineno)d] %(message)s",
        datefmt='%H:%M:%S'
    )

    file_handler = logging.handlers.RotatingFileHandler(log_path, maxBytes=10*1024*1024, backupCount=5)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(NoisyLoggerFilter(logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(NoisyLoggerFilter(logging.WARNING))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    root.addHandler(console_handler)
    root.addHandler(file_handler)

    logging.info(f"Logging to {log_path} (console level: {logging.getLevelName(console_level).lower()})")


def parse_level(value: str) -> int:
    match value:
        case "debug" | "d": return logging.DEBUG
        case "info" | "i": return logging.INFO
        case "warning" | "w": return logging.WARNING
        case "error" | "e": return logging.ERROR
        case _: raise ValueError(f"Expected one of ([d]ebug, [i]nfo, [w]arning, [e]rror) " \
                                 f"for log level, not {value}")
