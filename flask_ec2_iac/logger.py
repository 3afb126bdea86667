# flask_ec2_iac/logger.py
"""
Central logging configuration for the CDK app.

Every module logs through the "flask-ec2-iac" logger. Its level starts
at INFO and is raised or lowered once per synth from the `log_level`
context key / LOG_LEVEL variable (see config.load_config).
"""

import logging

LOGGER_NAME = "flask-ec2-iac"


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """
    Returns a configured logger instance.

    Messages look like:
    2025-01-01 10:00:00 | INFO | flask-ec2-iac | message
    """

    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.INFO)

        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        )

        # StreamHandler writes to stderr, keeping `cdk synth` stdout clean
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def set_log_level(level: str, name: str = LOGGER_NAME) -> int:
    """
    Sets the level of the app logger from a name like "debug" or "WARNING".

    Raises ValueError for names the logging module does not know.
    """
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level {level!r}")

    get_logger(name).setLevel(resolved)
    return resolved
