"""Configure loguru sinks and format engine objects for log messages."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

_STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Replace loguru's default sink with the engine's stderr format.

    Args:
        level: Minimum level for every sink.
        log_file: Optional path of an additional rotating file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_STDERR_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level=level.upper(),
            format=_FILE_FORMAT,
            rotation="5 MB",
            retention=3,
            encoding="utf-8",
        )


def summarize_error(error: Any) -> dict[str, Any]:
    """Render an engine error (or any exception) as a compact log-friendly dict."""
    if error is None:
        return {"error": None}
    code = getattr(error, "code", None)
    category = getattr(error, "category", None)
    summary: dict[str, Any] = {"error": error.__class__.__name__, "message": str(error)}
    if code:
        summary["code"] = code
    if category:
        summary["category"] = category
    return summary
