"""
Logging configuration for the Exhibitor-on-Mesos scheduler.

Every module logs through logging.getLogger(__name__); this sets up the root
logger once, at process start.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] [{component}] %(levelname)s %(name)s - %(message)s"


def setup_logging(
    component_name: str = "scheduler",
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        component_name: Component identifier shown in every line (e.g. 'scheduler')
        level: Logging level, as an int or a name like "DEBUG"
        log_file: Optional file path for log output, in addition to stdout
        format_string: Custom format string (default provided)
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if format_string is None:
        format_string = DEFAULT_FORMAT.format(component=component_name.upper())

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # kazoo logs every reconnect attempt at INFO; storage opens a client per call.
    logging.getLogger("kazoo").setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(component_name)
    logger.info("%s logging initialized (level=%s)", component_name, logging.getLevelName(level))
    return logger
