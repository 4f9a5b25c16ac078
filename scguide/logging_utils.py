import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional


def setup_logger(out_dir: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("scguide")
    if logger.handlers:
        log_dirs = {
            os.path.dirname(h.baseFilename) for h in logger.handlers if isinstance(h, RotatingFileHandler)
        }
        if out_dir is None or log_dirs == {os.path.abspath(out_dir)}:
            return logger
        # a new output directory gets its own log files
        teardown_logger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
        log_path = os.path.join(out_dir, "scguide.log")
        err_path = os.path.join(out_dir, "scguide.error.log")

        fh = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3)
        fh.setFormatter(fmt)
        fh.setLevel(getattr(logging, level.upper(), logging.INFO))
        logger.addHandler(fh)

        eh = RotatingFileHandler(err_path, maxBytes=2 * 1024 * 1024, backupCount=2)
        eh.setFormatter(fmt)
        eh.setLevel(logging.ERROR)
        logger.addHandler(eh)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(ch)

    logger.propagate = False
    if out_dir:
        logger.info("Logger initialized. Logs at %s; errors at %s", log_path, err_path)
    return logger


def teardown_logger() -> None:
    """Close and detach handlers installed by `setup_logger`."""
    logger = logging.getLogger("scguide")
    for h in list(logger.handlers):
        try:
            h.close()
        finally:
            logger.removeHandler(h)
    logger.propagate = True
