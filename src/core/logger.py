"""
Logging setup for audio2afan.

All output goes to stdout in a single line format shared by the pipeline,
the service layer and the command line tool. ONNX Runtime and the numba
JIT used by librosa are kept at WARNING.
"""

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUIET_LOGGERS = ("onnxruntime", "numba")

LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_level(level: Union[str, int]) -> int:
    """
    Resolve a level name or number to a logging constant.

    Raises:
        ValueError: Unknown level name
    """
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name not in LEVEL_NAMES:
        raise ValueError(f"Unknown log level: {level}. Valid: {', '.join(LEVEL_NAMES)}")
    return getattr(logging, name)


def setup_logging(level: Union[str, int] = "INFO") -> int:
    """
    Install the stdout handler on the root logger.

    Args:
        level: Logging level name or number

    Returns:
        The numeric level applied
    """
    numeric_level = parse_level(level)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return numeric_level


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_log_level(level: Union[str, int]) -> int:
    """
    Change the root level after setup_logging, e.g. for a --log-level flag.

    Raises:
        ValueError: Unknown level name
    """
    numeric_level = parse_level(level)
    logging.getLogger().setLevel(numeric_level)
    return numeric_level
