"""Logging helpers for the campaign queue."""

import logging

ROOT_LOGGER_NAME = "campaign_queue"


def get_logger(component: str | None = None) -> logging.Logger:
    """Return the package logger, or the child logger of ``component``.

    Handlers are configured once via logging.basicConfig() in main.py;
    components only pick a name under ``campaign_queue``.
    """
    if not component:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
