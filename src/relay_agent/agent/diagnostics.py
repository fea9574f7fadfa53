"""
Error reporting for failed model exchanges.

Reports are logged and, when a report directory is configured, written as
JSON files together with the conversation context that triggered them.
"""

import json
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from ..llm.base import Message

logger = structlog.get_logger()


class ErrorReporter:
    """Collects error reports with their request context."""

    def __init__(self, report_dir: Path | str | None = None):
        self.report_dir = Path(report_dir) if report_dir else None

    def report(
        self,
        error: BaseException,
        message: str,
        context: list[Message] | None = None,
        location: str = "general",
    ) -> Path | None:
        """Log an error and persist a report. Returns the report path, if written."""
        payload: dict[str, Any] = {
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            },
            "location": location,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if context is not None:
            payload["context"] = [m.to_dict() for m in context]

        logger.error(message, location=location, error=str(error), error_type=type(error).__name__)

        if self.report_dir is None:
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        safe_location = "".join(c if c.isalnum() or c in "-_" else "-" for c in location)
        path = self.report_dir / f"error-report-{safe_location}-{stamp}.json"
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        except OSError as e:
            logger.error("Failed to write error report", path=str(path), error=str(e))
            return None

        logger.info("Error report written", path=str(path))
        return path
