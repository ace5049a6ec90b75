"""Logging helpers shared by the preview services"""
import logging
from typing import Optional


def log_preview_event(logger: logging.Logger, style_id: str, action: str, details: str = ""):
    """
    Log a preview lifecycle event in a consistent format.

    Args:
        logger: Logger instance
        style_id: Style the event belongs to
        action: Action description
        details: Additional details
    """
    log_msg = f"Style {style_id} | {action}"
    if details:
        log_msg += f" | {details}"
    logger.info(log_msg)


def log_error_with_context(
    logger: logging.Logger,
    error: Exception,
    context: str,
    style_id: Optional[str] = None
):
    """Log an unexpected error with its traceback, tagged with the style when known"""
    style_info = f"Style {style_id} | " if style_id else ""
    logger.error(
        f"{style_info}{context}: {type(error).__name__}: {error}",
        exc_info=True
    )
