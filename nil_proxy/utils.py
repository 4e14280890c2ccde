"""Bunch of random utilities."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from filelock import FileLock

logger = logging.getLogger(__name__)


def get_url_domain(url: str) -> str:
    """Redact URL so that only domain is displayed.

    Some RPC providers use path as an API key.
    """
    parsed = urlparse(url)
    if parsed.port in (80, 443, None):
        return parsed.hostname
    else:
        return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: str | Path = None,
    std_out_log_level: Optional[int] = None,
) -> logging.Logger:
    """Set up coloured log output.

    - Helper function to have nicer logging output in deployment scripts.
    - Tune down some noisy dependency library logging

    :param default_log_level:
        Used when ``LOG_LEVEL`` environment variable is not set.

    :param simplified_logging:
        Only print the message, no timestamps or logger names.

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level.upper(), None)
    assert numeric_level, f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-36s %(levelname)-8s %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    try:
        # Optional dev dependency
        import coloredlogs

        coloredlogs.install(level=std_out_log_level, fmt=fmt, datefmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=std_out_log_level, format=fmt, datefmt=date_fmt)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # File always gets at least INFO, env var controls only terminal output
        min_level = min(logging.INFO, numeric_level)
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))

        root = logging.getLogger()
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()


@contextmanager
def wait_other_writers(path: Path | str, timeout: int = 120):
    """Wait other potential writers writing the same file.

    - Two deployment runs started from the same folder
      must not both generate and persist a new account

    Example:

    .. code-block:: python

        with wait_other_writers(account_file):
            if not account_file.exists():
                account_file.write_text(json.dumps(credentials))

    :param path:
        File that is being written

    :param timeout:
        How many seconds wait to acquire the lock file.

        Default 2 minutes.

    :raise filelock.Timeout:
        If the file writer is stuck with the lock.
    """

    if isinstance(path, str):
        path = Path(path)

    assert isinstance(path, Path), f"Not Path object: {path}"

    path = path.absolute()

    os.makedirs(path.parent, exist_ok=True)

    lock_file = path.parent / (path.name + ".lock")

    lock = FileLock(lock_file, timeout=timeout)

    if lock.is_locked:
        logger.info(
            "File %s locked for writing, waiting %f seconds",
            path,
            timeout,
        )

    with lock:
        yield
