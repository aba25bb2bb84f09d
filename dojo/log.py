import logging
from logging.handlers import RotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(filename='app.log', level=logging.INFO):
    """Attach a rotating file handler to the root logger (once per file)."""
    root = logging.getLogger()
    root.setLevel(level)
    handler = RotatingFileHandler(filename, maxBytes=1000000, backupCount=5)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for existing in root.handlers:
        if isinstance(existing, RotatingFileHandler) and existing.baseFilename == handler.baseFilename:
            handler.close()
            return existing
    root.addHandler(handler)
    return handler
