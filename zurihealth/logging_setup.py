import logging
import os
from logging.handlers import RotatingFileHandler

ROOT_LOGGER = "zurihealth"


class ThirdPartyFilter(logging.Filter):
    """Filter to suppress chatty third-party logs."""
    def filter(self, record):
        if record.name.startswith(("sqlalchemy", "alembic")) and record.levelno < logging.INFO:
            return False
        return True


def setup_logging(level: str = "INFO", log_dir: str = None) -> logging.Logger:
    """Set up the application logger with console output and optional rotating files."""
    logger = logging.getLogger(ROOT_LOGGER)
    if logger.handlers:  # Prevent duplicate handlers
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    detailed_formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    simple_formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        app_file_handler = RotatingFileHandler(
            os.path.join(log_dir, "zurihealth.log"), maxBytes=10 * 1024 * 1024, backupCount=5
        )
        app_file_handler.setFormatter(detailed_formatter)
        app_file_handler.addFilter(ThirdPartyFilter())
        logger.addHandler(app_file_handler)

        # Migration failures and integrity problems end up here
        error_file_handler = RotatingFileHandler(
            os.path.join(log_dir, "error_log.txt"), maxBytes=10 * 1024 * 1024, backupCount=5
        )
        error_file_handler.setLevel(logging.WARNING)
        error_file_handler.setFormatter(simple_formatter)
        logger.addHandler(error_file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(detailed_formatter)
    console_handler.addFilter(ThirdPartyFilter())
    logger.addHandler(console_handler)

    logging.getLogger("alembic").setLevel(logging.WARNING)

    logger.debug("Logging configuration set up successfully")
    return logger


def get_logger(name=None):
    return logging.getLogger(name)
